import os
from datetime import datetime, timedelta
from decimal import Decimal

import pytest
import requests
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

os.environ.setdefault("DATABASE_URL", "sqlite:///./test.db")
os.environ.setdefault("SECRET_KEY", "secret")
os.environ["SKIP_MIGRATIONS"] = "1"

from affiliate_engine.core.config import settings
from affiliate_engine.core.db import Base
from affiliate_engine.crud.affiliates import update_affiliate
from affiliate_engine.crud.webhook_logs import (
    create_postback_template,
    create_webhook_log,
    list_postback_logs_for_commission,
    list_webhook_logs_for_commission,
)
from affiliate_engine.jobs.postback_retry import run_webhook_retry
from affiliate_engine.models.enums import DeliveryStatusEnum, PostbackTriggerEnum
from affiliate_engine.notifications.affiliate_webhooks import (
    DynamicField,
    FixedValue,
    build_webhook_data_map,
    fire_affiliate_webhook,
    is_store_domain,
    parse_parameter_mapping,
    render_webhook_url,
)
from affiliate_engine.notifications.postbacks import fire_postbacks
from affiliate_engine.notifications.senders.http import TRUNCATED_SUFFIX, HttpGetSender
from tests.factories import SHOP_ID, make_affiliate, make_attribution, make_click, make_commission


NOW = datetime(2026, 3, 1, 12, 0, 0)


def _setup_db(tmp_path):
    engine = create_engine(
        f"sqlite:///{tmp_path / 'notifications.db'}",
        connect_args={"check_same_thread": False},
        future=True,
    )
    SessionLocal = sessionmaker(bind=engine, autoflush=False, autocommit=False, future=True)
    Base.metadata.create_all(bind=engine)
    return SessionLocal


def _fake_get(calls, status_code=200, text="OK"):
    def fake_get(url, headers=None, timeout=None):
        calls.append({"url": url, "headers": headers, "timeout": timeout})

        class Resp:
            pass

        resp = Resp()
        resp.status_code = status_code
        resp.text = text
        return resp

    return fake_get


def _commission_with_click(db, **affiliate_kwargs):
    affiliate = make_affiliate(db, **affiliate_kwargs)
    click = make_click(
        db,
        affiliate=affiliate,
        created_at=NOW - timedelta(hours=1),
        url_params={"transaction_id": "tx-1", "sub2": "feed", "gclid": "abc"},
    )
    attribution = make_attribution(db, affiliate=affiliate, order_id="4001", click=click, order_total=Decimal("120.00"))
    return make_commission(db, attribution=attribution, subtotal=Decimal("120.00"), now=NOW)


def test_parse_parameter_mapping_filters_unknown_fields():
    mapping = parse_parameter_mapping(
        {
            "tid": {"type": "dynamic", "value": "transaction_id"},
            "src": {"type": "fixed", "value": "shopify"},
            "g": {"type": "dynamic", "value": "gclid"},
            "legacy": "order_id",
            "bogus": {"type": "dynamic", "value": "password"},
            "bad_legacy": "not_a_field",
            "": {"type": "fixed", "value": "x"},
        },
        extra_keys=["gclid"],
    )
    assert mapping == {
        "tid": DynamicField("transaction_id"),
        "src": FixedValue("shopify"),
        "g": DynamicField("gclid"),
        "legacy": DynamicField("order_id"),
    }
    assert parse_parameter_mapping(None) == {}
    assert parse_parameter_mapping(["tid"]) == {}


def test_render_substitutes_and_appends():
    rendered = render_webhook_url(
        "https://tracker.example/cb/{tid}?amount={amount}",
        {
            "tid": DynamicField("transaction_id"),
            "amount": DynamicField("commission_amount"),
            "note": FixedValue("a b&c"),
            "missing": DynamicField("sub4"),
        },
        {"transaction_id": "tx/1", "commission_amount": "12.00"},
    )
    assert rendered.url == "https://tracker.example/cb/tx%2F1?amount=12.00&note=a+b%26c"
    assert rendered.params == {"amount": "12.00", "note": "a b&c"}


def test_render_without_query_string_starts_one():
    rendered = render_webhook_url("https://tracker.example/cb", {"src": FixedValue("shopify")}, {})
    assert rendered.url == "https://tracker.example/cb?src=shopify"


@pytest.mark.parametrize(
    "url,expected",
    [
        ("https://demo-store.example/pixel", True),
        ("https://www.demo-store.example/pixel", True),
        ("https://checkout.demo-store.example/pixel", True),
        ("https://tracker.example/pixel", False),
        ("https://notdemo-store.example/pixel", False),
    ],
)
def test_is_store_domain(url, expected):
    assert is_store_domain(url, ["www.demo-store.example"]) is expected


def test_data_map_prefers_click_params_then_stored_postback(tmp_path):
    SessionLocal = _setup_db(tmp_path)
    with SessionLocal() as db:
        commission = _commission_with_click(db)
        affiliate = commission.affiliate
        update_affiliate(db, affiliate=affiliate, updates={"postback_sub1": "stored-1", "postback_transaction_id": "old"})
        attribution = commission.order_attribution

        data = build_webhook_data_map(commission, attribution, attribution.click, affiliate, affiliate.offer)

        assert data["transaction_id"] == "tx-1"
        assert data["sub1"] == "stored-1"
        assert data["sub2"] == "feed"
        assert data["gclid"] == "abc"
        assert data["postback_sub1"] == "stored-1"
        assert data["commission_amount"] == "12.00"
        assert data["order_total"] == "120.00"
        assert data["offer_id"] == str(affiliate.offer.id)
        assert data["order_date"] == NOW.isoformat()


def test_http_sender_success_and_truncation(monkeypatch):
    calls = []
    monkeypatch.setattr(
        "affiliate_engine.notifications.senders.http.requests.get",
        _fake_get(calls, status_code=204, text="x" * 1500),
    )
    result = HttpGetSender(timeout=5, user_agent="Affiliate-Engine/test").send(url="https://tracker.example/cb")

    assert result.success is True
    assert result.status_code == 204
    assert result.body == "x" * 1000 + TRUNCATED_SUFFIX
    assert calls == [
        {"url": "https://tracker.example/cb", "headers": {"User-Agent": "Affiliate-Engine/test"}, "timeout": 5}
    ]


def test_http_sender_failures(monkeypatch):
    calls = []
    monkeypatch.setattr(
        "affiliate_engine.notifications.senders.http.requests.get",
        _fake_get(calls, status_code=500, text=""),
    )
    result = HttpGetSender(timeout=10).send(url="https://tracker.example/cb")
    assert result.success is False
    assert result.error == "HTTP 500: No response body"

    def timeout_get(url, headers=None, timeout=None):
        raise requests.Timeout("read timed out")

    monkeypatch.setattr("affiliate_engine.notifications.senders.http.requests.get", timeout_get)
    result = HttpGetSender(timeout=10).send(url="https://tracker.example/cb")
    assert result.success is False
    assert result.status_code is None
    assert result.error == "Request timeout (10s)"

    def refused_get(url, headers=None, timeout=None):
        raise requests.ConnectionError("connection refused")

    monkeypatch.setattr("affiliate_engine.notifications.senders.http.requests.get", refused_get)
    assert HttpGetSender().send(url="https://tracker.example/cb").error == "connection refused"


def test_fire_affiliate_webhook_not_configured(tmp_path):
    SessionLocal = _setup_db(tmp_path)
    with SessionLocal() as db:
        commission = _commission_with_click(db)
        outcome = fire_affiliate_webhook(db, commission_id=commission.id)
        assert outcome.attempted is False
        assert outcome.reason == "not_configured"
        assert fire_affiliate_webhook(db, commission_id=999999).reason == "commission_not_found"


def test_fire_affiliate_webhook_refuses_store_domain(tmp_path, monkeypatch):
    monkeypatch.setattr(settings, "STORE_DOMAINS", ["demo-store.example"])
    calls = []
    monkeypatch.setattr("affiliate_engine.notifications.senders.http.requests.get", _fake_get(calls))
    SessionLocal = _setup_db(tmp_path)
    with SessionLocal() as db:
        commission = _commission_with_click(db, webhook_url="https://www.demo-store.example/thanks?oid={oid}")

        outcome = fire_affiliate_webhook(db, commission_id=commission.id, now=NOW)

        assert outcome.attempted is False
        assert outcome.reason == "store_domain"
        assert calls == []
        log = list_webhook_logs_for_commission(db, commission_id=commission.id)[0]
        assert log.status == DeliveryStatusEnum.FAILED
        assert log.last_attempt_at is None
        assert run_webhook_retry(db, min_gap_seconds=0, now=NOW + timedelta(hours=2)) == 0


def test_fire_affiliate_webhook_refuses_own_myshopify_host(tmp_path, monkeypatch):
    monkeypatch.setattr(settings, "STORE_DOMAINS", [])
    calls = []
    monkeypatch.setattr("affiliate_engine.notifications.senders.http.requests.get", _fake_get(calls))
    SessionLocal = _setup_db(tmp_path)
    with SessionLocal() as db:
        commission = _commission_with_click(db, webhook_url=f"https://{SHOP_ID}.myshopify.com/apps/track?oid={{oid}}")

        outcome = fire_affiliate_webhook(db, commission_id=commission.id, now=NOW)

        assert outcome.reason == "store_domain"
        assert calls == []


def test_stale_pending_webhook_is_picked_up_by_retry(tmp_path, monkeypatch):
    calls = []
    monkeypatch.setattr("affiliate_engine.notifications.senders.http.requests.get", _fake_get(calls))
    SessionLocal = _setup_db(tmp_path)
    with SessionLocal() as db:
        commission = _commission_with_click(db, webhook_url="https://tracker.example/pb")
        stale = create_webhook_log(
            db,
            shop_id=SHOP_ID,
            commission_id=commission.id,
            affiliate_id=commission.affiliate_id,
            webhook_url="https://tracker.example/pb?n=stale",
            request_params={},
        )
        fresh = create_webhook_log(
            db,
            shop_id=SHOP_ID,
            commission_id=commission.id,
            affiliate_id=commission.affiliate_id,
            webhook_url="https://tracker.example/pb?n=fresh",
            request_params={},
        )
        # Pending rows left behind by a process that died before sending.
        stale.created_at = NOW - timedelta(hours=3)
        fresh.created_at = NOW - timedelta(minutes=1)
        db.commit()

        assert run_webhook_retry(db, min_gap_seconds=3600, now=NOW) == 1

        db.refresh(stale)
        db.refresh(fresh)
        assert stale.status == DeliveryStatusEnum.SUCCESS
        assert stale.attempts == 1
        assert fresh.status == DeliveryStatusEnum.PENDING
        assert [call["url"] for call in calls] == ["https://tracker.example/pb?n=stale"]


def test_failed_webhook_is_logged_and_retried(tmp_path, monkeypatch):
    calls = []
    monkeypatch.setattr(
        "affiliate_engine.notifications.senders.http.requests.get",
        _fake_get(calls, status_code=502, text="Bad gateway"),
    )
    SessionLocal = _setup_db(tmp_path)
    with SessionLocal() as db:
        commission = _commission_with_click(
            db,
            webhook_url="https://tracker.example/pb?tid={tid}",
            webhook_parameter_mapping={"tid": {"type": "dynamic", "value": "transaction_id"}},
        )

        outcome = fire_affiliate_webhook(db, commission_id=commission.id, now=NOW)

        assert outcome.attempted is True
        assert outcome.success is False
        assert outcome.reason == "delivery_failed"
        log = list_webhook_logs_for_commission(db, commission_id=commission.id)[0]
        assert log.webhook_url == "https://tracker.example/pb?tid=tx-1"
        assert log.status == DeliveryStatusEnum.FAILED
        assert log.response_code == 502
        assert log.error_message == "HTTP 502: Bad gateway"
        assert log.attempts == 1

        # Too soon for the retry sweep.
        assert run_webhook_retry(db, min_gap_seconds=3600, now=NOW + timedelta(minutes=5)) == 0

        monkeypatch.setattr("affiliate_engine.notifications.senders.http.requests.get", _fake_get(calls))
        assert run_webhook_retry(db, min_gap_seconds=3600, now=NOW + timedelta(hours=2)) == 1
        db.refresh(log)
        assert log.status == DeliveryStatusEnum.SUCCESS
        assert log.attempts == 2
        assert log.error_message is None
        assert [call["url"] for call in calls] == ["https://tracker.example/pb?tid=tx-1"] * 2


def test_retry_stops_at_max_attempts(tmp_path, monkeypatch):
    calls = []
    monkeypatch.setattr(
        "affiliate_engine.notifications.senders.http.requests.get",
        _fake_get(calls, status_code=500, text="down"),
    )
    SessionLocal = _setup_db(tmp_path)
    with SessionLocal() as db:
        commission = _commission_with_click(db, webhook_url="https://tracker.example/pb")
        fire_affiliate_webhook(db, commission_id=commission.id, now=NOW)

        for hour in range(1, 5):
            run_webhook_retry(db, max_attempts=3, min_gap_seconds=0, now=NOW + timedelta(hours=hour))

        log = list_webhook_logs_for_commission(db, commission_id=commission.id)[0]
        assert log.attempts == 3
        assert log.status == DeliveryStatusEnum.FAILED
        assert len(calls) == 3


def test_conversion_postbacks_use_template_mappings(tmp_path, monkeypatch):
    calls = []
    monkeypatch.setattr("affiliate_engine.notifications.senders.http.requests.get", _fake_get(calls))
    SessionLocal = _setup_db(tmp_path)
    with SessionLocal() as db:
        commission = _commission_with_click(db)
        create_postback_template(
            db,
            shop_id=SHOP_ID,
            name="Network",
            base_url="https://network.example/postback?net=1",
            param_mappings={"transaction_id": "clickid", "commission_amount": "payout", "currency": "cur", "sub4": "s4"},
        )
        create_postback_template(
            db,
            shop_id=SHOP_ID,
            name="Disabled",
            base_url="https://disabled.example/",
            param_mappings={"order_id": "oid"},
            active=False,
        )
        create_postback_template(
            db,
            shop_id="other-store",
            name="Other shop",
            base_url="https://other.example/",
            param_mappings={"order_id": "oid"},
        )

        logs = fire_postbacks(db, commission_id=commission.id, trigger_event=PostbackTriggerEnum.CONVERSION, now=NOW)

        assert [call["url"] for call in calls] == [
            "https://network.example/postback?net=1&clickid=tx-1&payout=12.00&cur=USD"
        ]
        assert len(logs) == 1
        stored = list_postback_logs_for_commission(db, commission_id=commission.id)
        assert stored[0].status == DeliveryStatusEnum.SUCCESS
        assert stored[0].request_params == {"net": "1", "clickid": "tx-1", "payout": "12.00", "cur": "USD"}
        assert fire_postbacks(db, commission_id=commission.id, trigger_event=PostbackTriggerEnum.PAYMENT) == []
