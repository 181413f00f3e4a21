import os
from datetime import datetime
from decimal import Decimal

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

os.environ.setdefault("DATABASE_URL", "sqlite:///./test.db")
os.environ.setdefault("SECRET_KEY", "secret")
os.environ["SKIP_MIGRATIONS"] = "1"

from affiliate_engine.core.db import Base
from affiliate_engine.core.order_ingest import IngestOutcome, process_order_event
from affiliate_engine.core.subscriptions import (
    SELLING_PLAN_PROPERTY,
    SubscriptionKind,
    classify_order,
    create_subscription_attribution,
    extract_subscription_data,
    find_subscription_for_renewal,
    parse_interval_months,
)
from affiliate_engine.crud.commissions import get_commission
from affiliate_engine.models.attributions import SubscriptionAttribution
from affiliate_engine.models.enums import CommissionTypeEnum, SellingSubscriptionsEnum
from affiliate_engine.schemas.orders import NameValue, OrderEvent
from tests.factories import SHOP_ID, make_affiliate, make_attribution, make_link, make_offer, order_payload


NOW = datetime(2026, 3, 1, 12, 0, 0)
PLAN_ID = "gid://shopify/SellingPlan/4242"
RENEWAL_TAG = "appstle_subscription_recurring_order"


def _setup_db(tmp_path):
    engine = create_engine(
        f"sqlite:///{tmp_path / 'subscriptions.db'}",
        connect_args={"check_same_thread": False},
        future=True,
    )
    SessionLocal = sessionmaker(bind=engine, autoflush=False, autocommit=False, future=True)
    Base.metadata.create_all(bind=engine)
    return SessionLocal


def _subscription_item(*, renewal=False, interval="3 months"):
    item = {
        "id": 11,
        "title": "Coffee subscription",
        "price": "40.00",
        "quantity": 1,
        "properties": [{"name": SELLING_PLAN_PROPERTY, "value": PLAN_ID}],
        "selling_plan_allocation": {"selling_plan": {"billing_policy": {"interval": interval}}},
    }
    if renewal:
        item["tags"] = f"{RENEWAL_TAG}, coffee"
    return item


def _order(order_id, *, renewal=False, coupon="BREW", **extra):
    return OrderEvent.model_validate(
        order_payload(
            order_id=order_id,
            order_number=order_id % 10000,
            total_price="40.00",
            subtotal_price="40.00",
            line_items=[_subscription_item(renewal=renewal)],
            discount_codes=[{"code": coupon}] if coupon else [],
            **extra,
        )
    )


@pytest.mark.parametrize(
    "raw,expected",
    [("3 months", 3), ("month", 1), (None, 1), ("0", 1), ("12", 12)],
)
def test_parse_interval_months(raw, expected):
    assert parse_interval_months(raw) == expected


def test_classify_order():
    assert classify_order(_order(1001)) == SubscriptionKind.INITIAL
    assert classify_order(_order(1002, renewal=True)) == SubscriptionKind.RENEWAL
    assert classify_order(OrderEvent.model_validate(order_payload())) == SubscriptionKind.NONE


def test_extract_subscription_data_reads_properties_and_metafields():
    order = _order(
        1003,
        renewal=True,
        metafields=[
            {"namespace": "appstle_subscription", "key": "original_order_id", "value": "1001"},
            {"namespace": "appstle", "key": "subscription_id", "value": "sub-77"},
        ],
    )
    order.line_items[0].properties.append(NameValue(name="__appstle-renewal-number", value="2"))

    data = extract_subscription_data(order)

    assert data.selling_plan_id == PLAN_ID
    assert data.original_order_id == "1001"
    assert data.subscription_id == "sub-77"
    assert data.renewal_number == 2
    assert data.interval_months == 3


def test_create_subscription_attribution_is_idempotent(tmp_path):
    SessionLocal = _setup_db(tmp_path)
    with SessionLocal() as db:
        affiliate = make_affiliate(db)
        kwargs = dict(
            shop_id=SHOP_ID,
            original_order_id="1001",
            affiliate_id=affiliate.id,
            selling_plan_id=PLAN_ID,
            interval_months=1,
            max_payments=None,
        )
        first = create_subscription_attribution(db, **kwargs)
        second = create_subscription_attribution(db, **kwargs)
        db.commit()

        assert first.id == second.id
        assert db.query(SubscriptionAttribution).count() == 1


def test_find_subscription_prefers_original_order(tmp_path):
    SessionLocal = _setup_db(tmp_path)
    with SessionLocal() as db:
        original_owner = make_affiliate(db)
        renewal_owner = make_affiliate(db)
        make_attribution(db, affiliate=original_owner, order_id="1001")
        common = dict(shop_id=SHOP_ID, selling_plan_id=PLAN_ID, interval_months=1, max_payments=None)
        original = create_subscription_attribution(
            db, original_order_id="1001", affiliate_id=original_owner.id, **common
        )
        latest = create_subscription_attribution(
            db, original_order_id="2002", affiliate_id=renewal_owner.id, **common
        )
        db.commit()

        by_original = find_subscription_for_renewal(
            db,
            shop_id=SHOP_ID,
            affiliate_id=renewal_owner.id,
            selling_plan_id=PLAN_ID,
            original_order_id="1001",
        )
        by_affiliate = find_subscription_for_renewal(
            db,
            shop_id=SHOP_ID,
            affiliate_id=renewal_owner.id,
            selling_plan_id=PLAN_ID,
        )

        assert by_original.id == original.id
        assert by_affiliate.id == latest.id
        assert find_subscription_for_renewal(db, shop_id=SHOP_ID, affiliate_id=renewal_owner.id, selling_plan_id=None) is None


def test_rebills_are_commissioned_up_to_ceiling(tmp_path):
    SessionLocal = _setup_db(tmp_path)
    with SessionLocal() as db:
        offer = make_offer(
            db,
            commission_type=CommissionTypeEnum.PERCENTAGE,
            amount=Decimal("20"),
            selling_subscriptions=SellingSubscriptionsEnum.CREDIT_FIRST_ONLY,
            subscription_max_payments=2,
            subscription_rebill_commission_type=CommissionTypeEnum.FLAT_RATE,
            subscription_rebill_commission_value=Decimal("3"),
        )
        affiliate = make_affiliate(db, offer=offer)
        make_link(db, affiliate=affiliate, coupon_code="BREW")

        initial = process_order_event(db, topic="orders/paid", shop_id=SHOP_ID, order=_order(5001), now=NOW)
        assert initial.outcome == IngestOutcome.COMMISSION_CREATED
        assert get_commission(db, commission_id=initial.commission_id).amount == Decimal("8.00")

        subscription = db.query(SubscriptionAttribution).one()
        assert subscription.original_order_id == "5001"
        assert subscription.interval_months == 3
        assert subscription.max_payments == 2
        assert subscription.payments_made == 0

        outcomes = [
            process_order_event(db, topic="orders/paid", shop_id=SHOP_ID, order=_order(order_id, renewal=True), now=NOW)
            for order_id in (5002, 5003, 5004)
        ]

        assert [result.outcome for result in outcomes] == [
            IngestOutcome.COMMISSION_CREATED,
            IngestOutcome.COMMISSION_CREATED,
            IngestOutcome.REBILL_INELIGIBLE,
        ]
        assert get_commission(db, commission_id=outcomes[0].commission_id).amount == Decimal("3.00")
        db.refresh(subscription)
        assert subscription.payments_made == 2


def test_renewal_without_subscription_is_skipped(tmp_path):
    SessionLocal = _setup_db(tmp_path)
    with SessionLocal() as db:
        offer = make_offer(db, selling_subscriptions=SellingSubscriptionsEnum.CREDIT_ALL)
        affiliate = make_affiliate(db, offer=offer)
        make_link(db, affiliate=affiliate, coupon_code="BREW")

        result = process_order_event(
            db,
            topic="orders/paid",
            shop_id=SHOP_ID,
            order=_order(6001, renewal=True),
            now=NOW,
        )

        assert result.outcome == IngestOutcome.SUBSCRIPTION_NOT_FOUND
        assert result.commission_id is None
