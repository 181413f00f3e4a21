import os

os.environ.setdefault("SKIP_MIGRATIONS", "1")
os.environ.setdefault("DATABASE_URL", "sqlite:///:memory:")
os.environ.setdefault("SECRET_KEY", "secret")

import json
from datetime import datetime
from decimal import Decimal

import pytest

from affiliate_engine.core.errors import WebhookPayloadError
from affiliate_engine.core.order_ingest import build_attribution_request
from affiliate_engine.core.privacy import hash_ip
from affiliate_engine.core.shopify import (
    OrderTopic,
    is_test_webhook,
    normalize_shop_id,
    normalize_topic,
    parse_order_payload,
    verify_shopify_hmac,
)
from tests.factories import order_payload, sign


def test_hmac_verification_uses_exact_body():
    body = b'{"id": 1, "total_price": "10.00"}'
    header = sign(body, "s3cret")
    assert verify_shopify_hmac(body, header, "s3cret") is True
    assert verify_shopify_hmac(body + b" ", header, "s3cret") is False
    assert verify_shopify_hmac(body, header, "other") is False
    assert verify_shopify_hmac(body, None, "s3cret") is False
    assert verify_shopify_hmac(body, header, None) is False


@pytest.mark.parametrize(
    "topic,expected",
    [
        ("orders/create", OrderTopic.CREATE),
        ("Order creation", OrderTopic.CREATE),
        ("orders/updated", OrderTopic.UPDATED),
        ("orders/paid", OrderTopic.PAYMENT),
        ("order/payment", OrderTopic.PAYMENT),
        ("orders/cancelled", None),
        (None, None),
    ],
)
def test_normalize_topic(topic, expected):
    assert normalize_topic(topic) == expected


def test_normalize_shop_id():
    assert normalize_shop_id("Demo-Store.myshopify.com") == "demo-store"
    assert normalize_shop_id("demo-store") == "demo-store"


def test_parse_order_payload_reads_click_coupon_and_money():
    order = parse_order_payload(
        b'{"id": 42, "order_number": 1001, "total_price": "59.90", "subtotal_price": "49.90",'
        b' "created_at": "2026-03-01T14:00:00+02:00",'
        b' "attributes": {"affiliate_click_id": "abc123"},'
        b' "discount_codes": [{"code": "  SPRING10 "}]}'
    )
    assert order.order_id == "42"
    assert order.order_number_str == "1001"
    assert order.total_amount == Decimal("59.90")
    assert order.subtotal_amount == Decimal("49.90")
    assert order.created_at == datetime(2026, 3, 1, 12, 0, 0)
    assert order.carried_click_id == "abc123"
    assert order.coupon_code == "SPRING10"


@pytest.mark.parametrize("raw,code", [(b"{oops", "invalid_json"), (b"[1, 2]", "invalid_payload")])
def test_parse_order_payload_rejects_bad_bodies(raw, code):
    with pytest.raises(WebhookPayloadError) as exc_info:
        parse_order_payload(raw)
    assert exc_info.value.code == code
    assert exc_info.value.status_code == 400


def test_test_flag_from_body_or_header():
    assert is_test_webhook(parse_order_payload(b'{"id": 1, "test": true}'), None) is True
    assert is_test_webhook(parse_order_payload(b'{"id": 1}'), "true") is True
    assert is_test_webhook(parse_order_payload(b'{"id": 1}'), None) is False


def test_attribution_request_prefers_browser_details_and_drops_click_for_internal():
    payload = order_payload(
        click_id="abc123",
        client_details={"browser_ip": "198.51.100.9", "user_agent": "Mozilla/5.0"},
        note_attributes=[
            {"name": "affiliate_click_id", "value": "abc123"},
            {"name": "ref", "value": "internal"},
        ],
    )
    order = parse_order_payload(json.dumps(payload))
    request = build_attribution_request(order, shop_id="demo-store", request_ip="203.0.113.1")

    assert request.ip_hash == hash_ip("demo-store", "198.51.100.9")
    assert request.has_internal_marker is True
    assert request.carried_click_id is None
    assert request.order_total == Decimal("200.00")
    assert request.customer_name == "Jamie Buyer"
