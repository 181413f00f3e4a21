from __future__ import annotations

from sqlalchemy.orm import Session

from affiliate_engine.models.attributions import OrderAttribution, SubscriptionAttribution


def get_attribution_by_order(db: Session, *, shopify_order_id: str) -> OrderAttribution | None:
    return (
        db.query(OrderAttribution)
        .filter(OrderAttribution.shopify_order_id == str(shopify_order_id))
        .first()
    )


def upsert_order_attribution(db: Session, *, shopify_order_id: str, values: dict) -> OrderAttribution:
    attribution = get_attribution_by_order(db, shopify_order_id=shopify_order_id)
    if attribution:
        for key, value in values.items():
            setattr(attribution, key, value)
    else:
        attribution = OrderAttribution(shopify_order_id=str(shopify_order_id), **values)
        db.add(attribution)
    db.flush()
    return attribution


def get_subscription_attribution(
    db: Session,
    *,
    original_order_id: str,
    selling_plan_id: str,
) -> SubscriptionAttribution | None:
    return (
        db.query(SubscriptionAttribution)
        .filter(
            SubscriptionAttribution.original_order_id == str(original_order_id),
            SubscriptionAttribution.selling_plan_id == str(selling_plan_id),
        )
        .first()
    )


def latest_active_subscription(
    db: Session,
    *,
    shop_id: str,
    affiliate_id: int,
    selling_plan_id: str,
) -> SubscriptionAttribution | None:
    return (
        db.query(SubscriptionAttribution)
        .filter(
            SubscriptionAttribution.shop_id == shop_id,
            SubscriptionAttribution.affiliate_id == affiliate_id,
            SubscriptionAttribution.selling_plan_id == str(selling_plan_id),
            SubscriptionAttribution.active.is_(True),
        )
        .order_by(SubscriptionAttribution.created_at.desc(), SubscriptionAttribution.id.desc())
        .first()
    )
