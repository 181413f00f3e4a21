from __future__ import annotations

from decimal import Decimal

from sqlalchemy import func
from sqlalchemy.orm import Session

from affiliate_engine.core.sequences import next_affiliate_number, next_offer_number
from affiliate_engine.models.affiliates import Affiliate, AffiliateLink, Offer
from affiliate_engine.models.enums import (
    AffiliateStatusEnum,
    CommissionTypeEnum,
    SellingSubscriptionsEnum,
)


def create_offer(
    db: Session,
    *,
    shop_id: str,
    name: str,
    commission_type: CommissionTypeEnum,
    amount: Decimal | float,
    currency: str = "USD",
    attribution_window_days: int = 90,
    selling_subscriptions: SellingSubscriptionsEnum = SellingSubscriptionsEnum.NO,
    subscription_max_payments: int | None = None,
    subscription_rebill_commission_type: CommissionTypeEnum | None = None,
    subscription_rebill_commission_value: Decimal | float | None = None,
) -> Offer:
    offer = Offer(
        shop_id=shop_id,
        offer_number=next_offer_number(db, shop_id=shop_id),
        name=name,
        commission_type=commission_type,
        amount=amount,
        currency=currency,
        attribution_window_days=attribution_window_days,
        selling_subscriptions=selling_subscriptions,
        subscription_max_payments=subscription_max_payments,
        subscription_rebill_commission_type=subscription_rebill_commission_type,
        subscription_rebill_commission_value=subscription_rebill_commission_value,
    )
    db.add(offer)
    db.commit()
    db.refresh(offer)
    return offer


def get_offer(db: Session, *, offer_id: int) -> Offer | None:
    return db.query(Offer).filter(Offer.id == offer_id).first()


def create_affiliate(
    db: Session,
    *,
    shop_id: str,
    name: str,
    email: str | None = None,
    offer_id: int | None = None,
    status: AffiliateStatusEnum = AffiliateStatusEnum.ACTIVE,
    payout_terms_days: int = 30,
    webhook_url: str | None = None,
    webhook_parameter_mapping: dict | None = None,
) -> Affiliate:
    affiliate = Affiliate(
        shop_id=shop_id,
        affiliate_number=next_affiliate_number(db, shop_id=shop_id),
        name=name,
        email=email,
        offer_id=offer_id,
        status=status,
        payout_terms_days=payout_terms_days,
        webhook_url=webhook_url,
        webhook_parameter_mapping=webhook_parameter_mapping,
    )
    db.add(affiliate)
    db.commit()
    db.refresh(affiliate)
    return affiliate


def get_affiliate(db: Session, *, affiliate_id: int) -> Affiliate | None:
    return db.query(Affiliate).filter(Affiliate.id == affiliate_id).first()


def get_affiliate_by_number(db: Session, *, shop_id: str, affiliate_number: int) -> Affiliate | None:
    return (
        db.query(Affiliate)
        .filter(Affiliate.shop_id == shop_id, Affiliate.affiliate_number == affiliate_number)
        .first()
    )


def find_affiliate_by_email(db: Session, *, shop_id: str, email: str) -> Affiliate | None:
    normalized = (email or "").strip().lower()
    if not normalized:
        return None
    return (
        db.query(Affiliate)
        .filter(Affiliate.shop_id == shop_id, func.lower(Affiliate.email) == normalized)
        .first()
    )


def update_affiliate(db: Session, *, affiliate: Affiliate, updates: dict) -> Affiliate:
    for key, value in updates.items():
        setattr(affiliate, key, value)
    db.commit()
    db.refresh(affiliate)
    return affiliate


def store_postback_params(db: Session, *, affiliate: Affiliate, params: dict[str, str | None]) -> bool:
    """Copy non-empty postback params onto the affiliate. Returns True when anything changed."""
    changed = False
    for key in ("transaction_id", "affiliate_id", "sub1", "sub2", "sub3", "sub4"):
        value = params.get(key)
        if not value:
            continue
        attr = f"postback_{key}"
        if getattr(affiliate, attr) != value:
            setattr(affiliate, attr, value)
            changed = True
    if changed:
        db.flush()
    return changed


def create_link(
    db: Session,
    *,
    affiliate: Affiliate,
    name: str,
    destination_url: str,
    coupon_code: str | None = None,
) -> AffiliateLink:
    link = AffiliateLink(
        shop_id=affiliate.shop_id,
        affiliate_id=affiliate.id,
        name=name,
        destination_url=destination_url,
        coupon_code=coupon_code,
    )
    db.add(link)
    db.commit()
    db.refresh(link)
    return link


def find_link_by_coupon(db: Session, *, shop_id: str, coupon_code: str) -> AffiliateLink | None:
    normalized = (coupon_code or "").strip().lower()
    if not normalized:
        return None
    return (
        db.query(AffiliateLink)
        .filter(
            AffiliateLink.shop_id == shop_id,
            AffiliateLink.coupon_code.isnot(None),
            func.lower(AffiliateLink.coupon_code) == normalized,
        )
        .order_by(AffiliateLink.created_at.desc())
        .first()
    )
