"""
Subscription (Appstle selling plan) detection and renewal matching.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from enum import Enum
from typing import Optional

from sqlalchemy.orm import Session

from affiliate_engine.crud.attributions import (
    get_attribution_by_order,
    get_subscription_attribution,
    latest_active_subscription,
)
from affiliate_engine.models.attributions import SubscriptionAttribution
from affiliate_engine.schemas.orders import OrderEvent


logger = logging.getLogger(__name__)

SELLING_PLAN_PROPERTY = "__appstle-selected-selling-plan"
RENEWAL_TAG = "appstle_subscription_recurring_order"
RENEWAL_NUMBER_PROPERTIES = ("__appstle-renewal-number", "__appstle-payment-number")
METAFIELD_NAMESPACES = ("appstle", "appstle_subscription")
ORIGINAL_ORDER_KEYS = ("original_order_id", "parent_order_id")
SUBSCRIPTION_ID_KEYS = ("subscription_id",)

_INTERVAL_RE = re.compile(r"(\d+)")


class SubscriptionKind(str, Enum):
    INITIAL = "initial"
    RENEWAL = "renewal"
    NONE = "none"


@dataclass(frozen=True)
class SubscriptionOrderData:
    selling_plan_id: Optional[str]
    original_order_id: Optional[str]
    subscription_id: Optional[str]
    renewal_number: Optional[int]
    interval_months: int


def parse_interval_months(interval: str | None) -> int:
    if not interval:
        return 1
    match = _INTERVAL_RE.search(str(interval))
    if not match:
        return 1
    value = int(match.group(1))
    return value if value > 0 else 1


def _selling_plan_id(order: OrderEvent) -> Optional[str]:
    for item in order.line_items:
        value = item.property_value(SELLING_PLAN_PROPERTY)
        if value:
            return value
    return None


def _renewal_number(order: OrderEvent) -> Optional[int]:
    for item in order.line_items:
        raw = item.property_value(*RENEWAL_NUMBER_PROPERTIES)
        if raw is None:
            continue
        try:
            return int(raw) or None
        except ValueError:
            return None
    return None


def extract_subscription_data(order: OrderEvent) -> SubscriptionOrderData:
    interval = order.line_items[0].billing_interval if order.line_items else None
    return SubscriptionOrderData(
        selling_plan_id=_selling_plan_id(order),
        original_order_id=order.metafield_value(METAFIELD_NAMESPACES, ORIGINAL_ORDER_KEYS),
        subscription_id=order.metafield_value(METAFIELD_NAMESPACES, SUBSCRIPTION_ID_KEYS),
        renewal_number=_renewal_number(order),
        interval_months=parse_interval_months(interval),
    )


def classify_order(order: OrderEvent) -> SubscriptionKind:
    # The selling plan property is on initial and renewal orders alike; only
    # renewals carry the recurring-order tag.
    if any(RENEWAL_TAG in item.tags for item in order.line_items):
        return SubscriptionKind.RENEWAL
    if _selling_plan_id(order):
        return SubscriptionKind.INITIAL
    return SubscriptionKind.NONE


def find_subscription_for_renewal(
    db: Session,
    *,
    shop_id: str,
    affiliate_id: int,
    selling_plan_id: str | None,
    original_order_id: str | None = None,
) -> SubscriptionAttribution | None:
    """Locate the subscription a renewal belongs to. Returns None rather than guessing."""
    if not selling_plan_id:
        return None
    if original_order_id:
        subscription = get_subscription_attribution(
            db,
            original_order_id=original_order_id,
            selling_plan_id=selling_plan_id,
        )
        if subscription is not None and subscription.active and subscription.shop_id == shop_id:
            return subscription
        original = get_attribution_by_order(db, shopify_order_id=original_order_id)
        if original is not None and original.affiliate_id is not None and original.shop_id == shop_id:
            subscription = latest_active_subscription(
                db,
                shop_id=shop_id,
                affiliate_id=original.affiliate_id,
                selling_plan_id=selling_plan_id,
            )
            if subscription is not None:
                return subscription
    return latest_active_subscription(
        db,
        shop_id=shop_id,
        affiliate_id=affiliate_id,
        selling_plan_id=selling_plan_id,
    )


def create_subscription_attribution(
    db: Session,
    *,
    shop_id: str,
    original_order_id: str,
    affiliate_id: int,
    selling_plan_id: str,
    interval_months: int,
    max_payments: int | None,
) -> SubscriptionAttribution:
    """Idempotent on (original_order_id, selling_plan_id). Flushes; the caller commits."""
    existing = get_subscription_attribution(
        db,
        original_order_id=original_order_id,
        selling_plan_id=selling_plan_id,
    )
    if existing is not None:
        return existing
    subscription = SubscriptionAttribution(
        shop_id=shop_id,
        original_order_id=str(original_order_id),
        affiliate_id=affiliate_id,
        selling_plan_id=str(selling_plan_id),
        interval_months=interval_months,
        max_payments=max_payments,
        payments_made=0,
        active=True,
    )
    db.add(subscription)
    # A concurrent initial delivery loses on uq_subscription_attributions_order_plan
    # here; the ingest transaction rolls back and reports a duplicate.
    db.flush()
    logger.info(
        "subscription.created",
        extra={
            "shop_id": shop_id,
            "order_id": str(original_order_id),
            "affiliate_id": affiliate_id,
            "selling_plan_id": str(selling_plan_id),
        },
    )
    return subscription


def record_rebill_payment(subscription: SubscriptionAttribution) -> None:
    subscription.payments_made = int(subscription.payments_made or 0) + 1
