"""
Order and refund webhook processing.

The HTTP layer verifies and parses the webhook; everything here works on a
validated OrderEvent and returns an IngestResult whose outcome is reported
back to Shopify with a 200. Only database failures escape as exceptions.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Optional

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from affiliate_engine.attribution.resolver import resolve_order_attribution
from affiliate_engine.attribution.strategies import AttributionRequest
from affiliate_engine.core.commissions import (
    REFUND_REASON,
    OfferRule,
    create_offer_commission,
    rebill_is_eligible,
    reverse_commissions_for_order,
)
from affiliate_engine.core.config import settings
from affiliate_engine.core.fraud import run_fraud_checks
from affiliate_engine.core.metrics import commissions_created_total, order_webhooks_total
from affiliate_engine.core.privacy import hash_ip, hash_user_agent
from affiliate_engine.core.shopify import OrderTopic, normalize_topic
from affiliate_engine.core.subscriptions import (
    SubscriptionKind,
    classify_order,
    create_subscription_attribution,
    extract_subscription_data,
    find_subscription_for_renewal,
    record_rebill_payment,
)
from affiliate_engine.core.time import utcnow
from affiliate_engine.crud.commissions import get_active_commission_for_order
from affiliate_engine.models.enums import PostbackTriggerEnum
from affiliate_engine.notifications.affiliate_webhooks import fire_affiliate_webhook
from affiliate_engine.notifications.postbacks import fire_postbacks
from affiliate_engine.schemas.orders import OrderEvent, RefundEvent

logger = logging.getLogger(__name__)

PAID_STATUSES = {"paid", "partially_paid"}


class IngestOutcome(str, Enum):
    TEST = "test"
    IGNORED_TOPIC = "ignored_topic"
    MISSING_ORDER_FIELDS = "missing_order_fields"
    ATTRIBUTED = "attributed"
    NOT_PAID = "not_paid"
    DUPLICATE = "duplicate"
    NO_ATTRIBUTION = "no_attribution"
    AFFILIATE_INACTIVE = "affiliate_inactive"
    NO_OFFER = "no_offer"
    SUBSCRIPTION_NOT_FOUND = "subscription_not_found"
    REBILL_INELIGIBLE = "rebill_ineligible"
    COMMISSION_CREATED = "commission_created"
    REFUND_APPLIED = "refund_applied"


@dataclass
class IngestResult:
    outcome: IngestOutcome
    commission_id: Optional[int] = None
    attribution_id: Optional[int] = None
    reversed_commission_ids: list[int] = field(default_factory=list)


def _finish(topic_label: str, shop_id: str, order_id: str | None, result: IngestResult) -> IngestResult:
    order_webhooks_total.labels(topic=topic_label, outcome=result.outcome.value).inc()
    logger.info(
        "order_webhook.processed",
        extra={
            "shop_id": shop_id,
            "order_id": order_id,
            "topic": topic_label,
            "outcome": result.outcome.value,
            "commission_id": result.commission_id,
        },
    )
    return result


def build_attribution_request(
    order: OrderEvent,
    *,
    shop_id: str,
    request_ip: str | None = None,
    request_user_agent: str | None = None,
    now: datetime | None = None,
) -> AttributionRequest:
    ip = order.browser_ip or request_ip
    user_agent = order.browser_user_agent or request_user_agent
    internal = order.has_internal_marker
    return AttributionRequest(
        shop_id=shop_id,
        shopify_order_id=order.order_id or "",
        shopify_order_number=order.order_number_str or "",
        order_created_at=order.created_at or now or utcnow(),
        referrer_url=order.referrer_url,
        carried_click_id=None if internal else order.carried_click_id,
        coupon_code=order.coupon_code,
        has_internal_marker=internal,
        order_email=order.customer_email,
        customer_name=order.customer_name,
        order_total=order.total_amount,
        order_currency=order.currency or settings.DEFAULT_CURRENCY,
        ip_hash=hash_ip(shop_id, ip) if ip else None,
        user_agent_hash=hash_user_agent(shop_id, user_agent) if user_agent else None,
    )


def is_commissionable_payment(order: OrderEvent) -> bool:
    if (order.financial_status or "").lower() in PAID_STATUSES:
        return True
    # Only an explicit zero total counts; a missing total is not a free order.
    return settings.COMMISSION_ZERO_TOTAL_ORDERS and order.total_price is not None and order.total_price == Decimal("0")


def process_order_event(
    db: Session,
    *,
    topic: str | None,
    shop_id: str,
    order: OrderEvent,
    request_ip: str | None = None,
    request_user_agent: str | None = None,
    now: datetime | None = None,
) -> IngestResult:
    now = now or utcnow()
    normalized = normalize_topic(topic)
    topic_label = normalized.value if normalized else "unknown"
    order_id = order.order_id

    def done(outcome: IngestOutcome, **kwargs) -> IngestResult:
        return _finish(topic_label, shop_id, order_id, IngestResult(outcome=outcome, **kwargs))

    if normalized is None:
        return done(IngestOutcome.IGNORED_TOPIC)
    if not order_id or not order.order_number_str:
        return done(IngestOutcome.MISSING_ORDER_FIELDS)

    request = build_attribution_request(
        order,
        shop_id=shop_id,
        request_ip=request_ip,
        request_user_agent=request_user_agent,
        now=now,
    )
    is_paid_create = normalized == OrderTopic.CREATE and (order.financial_status or "").lower() == "paid"

    if normalized == OrderTopic.CREATE and not is_paid_create:
        outcome = resolve_order_attribution(db, request, now=now)
        if outcome.attribution is None:
            return done(IngestOutcome.NO_ATTRIBUTION)
        return done(
            IngestOutcome.ATTRIBUTED,
            attribution_id=outcome.attribution.id,
            reversed_commission_ids=outcome.reversed_commission_ids,
        )

    if not is_paid_create and not is_commissionable_payment(order):
        return done(IngestOutcome.NOT_PAID)

    if get_active_commission_for_order(db, shop_id=shop_id, shopify_order_id=order_id) is not None:
        return done(IngestOutcome.DUPLICATE)

    outcome = resolve_order_attribution(db, request, now=now)
    attribution = outcome.attribution
    if attribution is None:
        return done(IngestOutcome.NO_ATTRIBUTION)

    affiliate = attribution.affiliate
    if affiliate is None or not affiliate.is_active:
        return done(IngestOutcome.AFFILIATE_INACTIVE, attribution_id=attribution.id)
    offer = affiliate.offer
    if offer is None:
        return done(IngestOutcome.NO_OFFER, attribution_id=attribution.id)

    kind = classify_order(order)
    subscription_data = extract_subscription_data(order)
    subscription = None
    try:
        if kind == SubscriptionKind.RENEWAL:
            subscription = find_subscription_for_renewal(
                db,
                shop_id=shop_id,
                affiliate_id=affiliate.id,
                selling_plan_id=subscription_data.selling_plan_id,
                original_order_id=subscription_data.original_order_id,
            )
            if subscription is None:
                logger.warning(
                    "subscription.renewal_unmatched",
                    extra={"shop_id": shop_id, "order_id": order_id, "affiliate_id": affiliate.id},
                )
                return done(IngestOutcome.SUBSCRIPTION_NOT_FOUND, attribution_id=attribution.id)
            if not rebill_is_eligible(subscription, OfferRule.from_offer(offer)):
                return done(IngestOutcome.REBILL_INELIGIBLE, attribution_id=attribution.id)
        elif kind == SubscriptionKind.INITIAL:
            create_subscription_attribution(
                db,
                shop_id=shop_id,
                original_order_id=order_id,
                affiliate_id=affiliate.id,
                selling_plan_id=subscription_data.selling_plan_id,
                interval_months=subscription_data.interval_months,
                max_payments=offer.subscription_max_payments,
            )

        commission = create_offer_commission(
            db,
            affiliate=affiliate,
            offer=offer,
            order_attribution=attribution,
            shopify_order_id=order_id,
            subtotal=order.subtotal_amount,
            currency=order.currency,
            is_initial_payment=kind != SubscriptionKind.RENEWAL,
            now=now,
        )
        if subscription is not None:
            record_rebill_payment(subscription)
        run_fraud_checks(
            db,
            commission=commission,
            order_email=order.customer_email,
            click_ip_hash=attribution.click.ip_hash if attribution.click is not None else None,
            now=now,
        )
        db.commit()
    except IntegrityError:
        db.rollback()
        logger.info("commission.duplicate_race", extra={"shop_id": shop_id, "order_id": order_id})
        return done(IngestOutcome.DUPLICATE, attribution_id=attribution.id)

    commission_kind = {
        SubscriptionKind.RENEWAL: "renewal",
        SubscriptionKind.INITIAL: "initial",
    }.get(kind, "one_time")
    commissions_created_total.labels(kind=commission_kind).inc()
    logger.info(
        "commission.created",
        extra={
            "shop_id": shop_id,
            "order_id": order_id,
            "affiliate_id": affiliate.id,
            "commission_id": commission.id,
            "amount": str(commission.amount),
            "kind": commission_kind,
        },
    )

    fire_affiliate_webhook(db, commission_id=commission.id, now=now)
    fire_postbacks(db, commission_id=commission.id, trigger_event=PostbackTriggerEnum.CONVERSION, now=now)

    return done(
        IngestOutcome.COMMISSION_CREATED,
        commission_id=commission.id,
        attribution_id=attribution.id,
        reversed_commission_ids=outcome.reversed_commission_ids,
    )


def process_refund_event(
    db: Session,
    *,
    shop_id: str,
    refund: RefundEvent,
    now: datetime | None = None,
) -> IngestResult:
    order_id = str(refund.order_id) if refund.order_id not in (None, "") else None
    if order_id is None:
        return _finish("refunds/create", shop_id, None, IngestResult(outcome=IngestOutcome.MISSING_ORDER_FIELDS))
    reversed_ids = reverse_commissions_for_order(
        db,
        shop_id=shop_id,
        shopify_order_id=order_id,
        reason=REFUND_REASON,
        now=now,
    )
    return _finish(
        "refunds/create",
        shop_id,
        order_id,
        IngestResult(outcome=IngestOutcome.REFUND_APPLIED, reversed_commission_ids=reversed_ids),
    )
