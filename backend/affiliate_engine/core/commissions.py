"""
Commission calculation, creation and lifecycle transitions.

Amounts are Decimal and quantized to cents with ROUND_HALF_UP. Each commission
stores a rule_snapshot so later offer edits never change historical payouts.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from decimal import ROUND_HALF_UP, Decimal
from typing import Any, Optional

from sqlalchemy.orm import Session

from affiliate_engine.core.config import settings
from affiliate_engine.core.errors import CommissionBlockedByFraud, InvalidCommissionTransition
from affiliate_engine.core.metrics import commissions_reversed_total
from affiliate_engine.core.time import utcnow
from affiliate_engine.crud.commissions import list_commissions, list_commissions_for_order
from affiliate_engine.models.affiliates import Affiliate, Offer
from affiliate_engine.models.attributions import OrderAttribution, SubscriptionAttribution
from affiliate_engine.models.commissions import Commission
from affiliate_engine.models.enums import (
    CommissionStatusEnum,
    CommissionTypeEnum,
    PostbackTriggerEnum,
    SellingSubscriptionsEnum,
)
from affiliate_engine.models.fraud_flags import FraudFlag
from affiliate_engine.notifications.postbacks import fire_postbacks


logger = logging.getLogger(__name__)

CENTS = Decimal("0.01")
REATTRIBUTION_REASON = "reattributed"
REFUND_REASON = "refunded"
FRAUD_REASON = "fraud"

UNPAID_STATUSES = [
    CommissionStatusEnum.PENDING,
    CommissionStatusEnum.ELIGIBLE,
    CommissionStatusEnum.APPROVED,
]

ALLOWED_TRANSITIONS: dict[CommissionStatusEnum, set[CommissionStatusEnum]] = {
    CommissionStatusEnum.PENDING: {CommissionStatusEnum.ELIGIBLE, CommissionStatusEnum.REVERSED},
    CommissionStatusEnum.ELIGIBLE: {CommissionStatusEnum.APPROVED, CommissionStatusEnum.REVERSED},
    CommissionStatusEnum.APPROVED: {CommissionStatusEnum.PAID, CommissionStatusEnum.REVERSED},
    # Admin override only; settled money is never reversed automatically.
    CommissionStatusEnum.PAID: {CommissionStatusEnum.ELIGIBLE},
    CommissionStatusEnum.REVERSED: set(),
}


def _to_decimal(value: Any) -> Decimal:
    if value is None:
        return Decimal("0")
    if isinstance(value, Decimal):
        return value
    return Decimal(str(value))


def _quantize(value: Decimal) -> Decimal:
    return value.quantize(CENTS, rounding=ROUND_HALF_UP)


@dataclass(frozen=True)
class OfferRule:
    commission_type: CommissionTypeEnum
    amount: Decimal
    currency: str = "USD"
    selling_subscriptions: SellingSubscriptionsEnum = SellingSubscriptionsEnum.NO
    subscription_max_payments: Optional[int] = None
    rebill_commission_type: Optional[CommissionTypeEnum] = None
    rebill_commission_value: Optional[Decimal] = None

    @classmethod
    def from_offer(cls, offer: Offer) -> "OfferRule":
        return cls(
            commission_type=CommissionTypeEnum(offer.commission_type),
            amount=_to_decimal(offer.amount),
            currency=offer.currency or settings.DEFAULT_CURRENCY,
            selling_subscriptions=SellingSubscriptionsEnum(offer.selling_subscriptions or SellingSubscriptionsEnum.NO),
            subscription_max_payments=offer.subscription_max_payments,
            rebill_commission_type=(
                CommissionTypeEnum(offer.subscription_rebill_commission_type)
                if offer.subscription_rebill_commission_type
                else None
            ),
            rebill_commission_value=(
                _to_decimal(offer.subscription_rebill_commission_value)
                if offer.subscription_rebill_commission_value is not None
                else None
            ),
        )


def _apply_rule(commission_type: CommissionTypeEnum, value: Decimal, subtotal: Decimal) -> Decimal:
    if commission_type == CommissionTypeEnum.FLAT_RATE:
        return _quantize(value)
    return _quantize(subtotal * value / Decimal("100"))


def applied_rule(rule: OfferRule, is_initial_payment: bool) -> tuple[CommissionTypeEnum, Decimal] | None:
    """The (type, value) pair used for a payment, or None when it earns nothing."""
    if is_initial_payment:
        return rule.commission_type, rule.amount
    policy = rule.selling_subscriptions
    if policy in (SellingSubscriptionsEnum.NO, SellingSubscriptionsEnum.CREDIT_NONE):
        return None
    if (
        policy == SellingSubscriptionsEnum.CREDIT_FIRST_ONLY
        and rule.rebill_commission_type is not None
        and rule.rebill_commission_value is not None
    ):
        return rule.rebill_commission_type, rule.rebill_commission_value
    return rule.commission_type, rule.amount


def calculate_commission_amount(
    offer_rule: OfferRule | Offer,
    subtotal: Decimal | float | str,
    is_initial_payment: bool,
) -> Decimal:
    rule = offer_rule if isinstance(offer_rule, OfferRule) else OfferRule.from_offer(offer_rule)
    applied = applied_rule(rule, is_initial_payment)
    if applied is None:
        return Decimal("0.00")
    commission_type, value = applied
    return _apply_rule(commission_type, _to_decimal(value), _to_decimal(subtotal))


def rebill_is_eligible(subscription: SubscriptionAttribution, offer_rule: OfferRule | Offer) -> bool:
    rule = offer_rule if isinstance(offer_rule, OfferRule) else OfferRule.from_offer(offer_rule)
    if rule.selling_subscriptions in (SellingSubscriptionsEnum.NO, SellingSubscriptionsEnum.CREDIT_NONE):
        return False
    if not subscription.active:
        return False
    if rule.subscription_max_payments is None:
        return True
    return int(subscription.payments_made or 0) < int(rule.subscription_max_payments)


def build_rule_snapshot(offer: Offer, is_initial_payment: bool) -> dict[str, Any]:
    rule = OfferRule.from_offer(offer)
    applied = applied_rule(rule, is_initial_payment)
    return {
        "offer_id": offer.id,
        "offer_number": offer.offer_number,
        "offer_name": offer.name,
        "commission_type": rule.commission_type.value,
        "amount": str(rule.amount),
        "currency": rule.currency,
        "selling_subscriptions": rule.selling_subscriptions.value,
        "subscription_max_payments": rule.subscription_max_payments,
        "subscription_rebill_commission_type": (
            rule.rebill_commission_type.value if rule.rebill_commission_type else None
        ),
        "subscription_rebill_commission_value": (
            str(rule.rebill_commission_value) if rule.rebill_commission_value is not None else None
        ),
        "is_initial_payment": is_initial_payment,
        "applied_commission_type": applied[0].value if applied else None,
        "applied_value": str(applied[1]) if applied else None,
    }


def create_offer_commission(
    db: Session,
    *,
    affiliate: Affiliate,
    offer: Offer,
    order_attribution: OrderAttribution,
    shopify_order_id: str,
    subtotal: Decimal,
    currency: str | None,
    is_initial_payment: bool,
    now: datetime | None = None,
) -> Commission:
    """Add a pending commission to the session and flush it.

    The caller owns the transaction: a flush can raise IntegrityError when the
    (shopify_order_id, shop_id) pair already has a commission.
    """
    if order_attribution.affiliate_id != affiliate.id:
        raise ValueError(
            f"attribution {order_attribution.id} belongs to affiliate "
            f"{order_attribution.affiliate_id}, not {affiliate.id}"
        )
    now = now or utcnow()
    payout_days = affiliate.payout_terms_days
    if payout_days is None:
        payout_days = settings.DEFAULT_PAYOUT_TERMS_DAYS
    commission = Commission(
        shop_id=affiliate.shop_id,
        affiliate_id=affiliate.id,
        order_attribution_id=order_attribution.id,
        shopify_order_id=str(shopify_order_id),
        amount=calculate_commission_amount(offer, subtotal, is_initial_payment),
        currency=currency or offer.currency or settings.DEFAULT_CURRENCY,
        status=CommissionStatusEnum.PENDING,
        eligible_date=now + timedelta(days=int(payout_days)),
        rule_snapshot=build_rule_snapshot(offer, is_initial_payment),
        created_at=now,
        updated_at=now,
    )
    db.add(commission)
    db.flush()
    return commission


def _transition(commission: Commission, target: CommissionStatusEnum) -> None:
    current = CommissionStatusEnum(commission.status)
    if target not in ALLOWED_TRANSITIONS[current]:
        raise InvalidCommissionTransition(commission.id, current.value, target.value)
    commission.status = target


def reverse_commissions_for_order(
    db: Session,
    *,
    shop_id: str,
    shopify_order_id: str,
    reason: str,
    now: datetime | None = None,
    commit: bool = True,
) -> list[int]:
    """Reverse every unpaid commission of an order. Paid commissions are left alone."""
    commissions = list_commissions_for_order(
        db,
        shop_id=shop_id,
        shopify_order_id=shopify_order_id,
        statuses=UNPAID_STATUSES,
    )
    reversed_ids: list[int] = []
    for commission in commissions:
        _transition(commission, CommissionStatusEnum.REVERSED)
        commission.reversal_reason = reason
        commission.updated_at = now or utcnow()
        reversed_ids.append(commission.id)
        commissions_reversed_total.labels(reason=reason).inc()
    if commit:
        db.commit()
    else:
        db.flush()
    if reversed_ids:
        logger.info(
            "commission.reversed",
            extra={
                "shop_id": shop_id,
                "order_id": str(shopify_order_id),
                "commission_ids": reversed_ids,
                "reason": reason,
            },
        )
    return reversed_ids


def _load_for_transition(
    db: Session,
    commission_ids: list[int],
    expected: CommissionStatusEnum,
    target: CommissionStatusEnum,
) -> list[Commission]:
    commissions = list_commissions(db, commission_ids=commission_ids)
    for commission in commissions:
        if CommissionStatusEnum(commission.status) != expected:
            raise InvalidCommissionTransition(commission.id, CommissionStatusEnum(commission.status).value, target.value)
    return commissions


def _ensure_no_open_fraud_flags(db: Session, commission_ids: list[int]) -> None:
    rows = (
        db.query(FraudFlag.id, FraudFlag.commission_id)
        .filter(FraudFlag.commission_id.in_(commission_ids), FraudFlag.resolved.is_(False))
        .order_by(FraudFlag.commission_id.asc(), FraudFlag.id.asc())
        .all()
    )
    if rows:
        blocked_id = rows[0][1]
        flag_ids = [flag_id for flag_id, commission_id in rows if commission_id == blocked_id]
        raise CommissionBlockedByFraud(blocked_id, flag_ids)


def _apply_batch(
    db: Session,
    commissions: list[Commission],
    target: CommissionStatusEnum,
    now: datetime | None,
) -> list[Commission]:
    stamp = now or utcnow()
    for commission in commissions:
        _transition(commission, target)
        commission.updated_at = stamp
    db.commit()
    logger.info(
        "commission.transitioned",
        extra={"commission_ids": [c.id for c in commissions], "status": target.value},
    )
    return commissions


def _fire_lifecycle_postbacks(db: Session, commissions: list[Commission], trigger: PostbackTriggerEnum) -> None:
    for commission in commissions:
        fire_postbacks(db, commission_id=commission.id, trigger_event=trigger)


def validate_commissions(db: Session, *, commission_ids: list[int], now: datetime | None = None) -> list[Commission]:
    """pending -> eligible."""
    _ensure_no_open_fraud_flags(db, commission_ids)
    commissions = _load_for_transition(
        db, commission_ids, CommissionStatusEnum.PENDING, CommissionStatusEnum.ELIGIBLE
    )
    return _apply_batch(db, commissions, CommissionStatusEnum.ELIGIBLE, now)


def approve_commissions(db: Session, *, commission_ids: list[int], now: datetime | None = None) -> list[Commission]:
    """eligible -> approved, then fires approval postbacks."""
    _ensure_no_open_fraud_flags(db, commission_ids)
    commissions = _load_for_transition(
        db, commission_ids, CommissionStatusEnum.ELIGIBLE, CommissionStatusEnum.APPROVED
    )
    _apply_batch(db, commissions, CommissionStatusEnum.APPROVED, now)
    _fire_lifecycle_postbacks(db, commissions, PostbackTriggerEnum.APPROVAL)
    return commissions


def mark_commissions_paid(db: Session, *, commission_ids: list[int], now: datetime | None = None) -> list[Commission]:
    """approved -> paid, then fires payment postbacks."""
    commissions = _load_for_transition(
        db, commission_ids, CommissionStatusEnum.APPROVED, CommissionStatusEnum.PAID
    )
    _apply_batch(db, commissions, CommissionStatusEnum.PAID, now)
    _fire_lifecycle_postbacks(db, commissions, PostbackTriggerEnum.PAYMENT)
    return commissions


def revert_paid_commissions(db: Session, *, commission_ids: list[int], now: datetime | None = None) -> list[Commission]:
    """paid -> eligible. Admin override for payouts that bounced."""
    commissions = _load_for_transition(
        db, commission_ids, CommissionStatusEnum.PAID, CommissionStatusEnum.ELIGIBLE
    )
    return _apply_batch(db, commissions, CommissionStatusEnum.ELIGIBLE, now)


def reject_commissions(
    db: Session,
    *,
    commission_ids: list[int],
    reason: str = FRAUD_REASON,
    now: datetime | None = None,
) -> list[Commission]:
    """pending/eligible/approved -> reversed. Paid commissions are refused."""
    commissions = list_commissions(db, commission_ids=commission_ids)
    for commission in commissions:
        current = CommissionStatusEnum(commission.status)
        if CommissionStatusEnum.REVERSED not in ALLOWED_TRANSITIONS[current]:
            raise InvalidCommissionTransition(commission.id, current.value, CommissionStatusEnum.REVERSED.value)
    stamp = now or utcnow()
    for commission in commissions:
        _transition(commission, CommissionStatusEnum.REVERSED)
        commission.reversal_reason = reason
        commission.updated_at = stamp
    db.commit()
    for commission in commissions:
        commissions_reversed_total.labels(reason=reason).inc()
    logger.info(
        "commission.rejected",
        extra={"commission_ids": [c.id for c in commissions], "reason": reason},
    )
    return commissions
