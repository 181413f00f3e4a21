"""
Deterministic seed script for dev/demo environments.
"""

from __future__ import annotations

import os
import sys
from decimal import Decimal

from affiliate_engine.core.db import SessionLocal, Base, engine
from affiliate_engine.crud.affiliates import create_affiliate, create_link, create_offer
from affiliate_engine.crud.webhook_logs import create_postback_template
from affiliate_engine.models.affiliates import Affiliate, Offer
from affiliate_engine.models.enums import (
    CommissionTypeEnum,
    PostbackTriggerEnum,
    SellingSubscriptionsEnum,
)

import affiliate_engine.models  # noqa: F401

DEMO_SHOP_ID = "demo-store"


def ensure_not_production():
    env = os.getenv("ENV", "").lower()
    allow_prod = os.getenv("ALLOW_SEED_PROD", "0").lower() in {"1", "true", "yes"}
    if env == "production" and not allow_prod:
        print("Refusing to seed in production. Set ALLOW_SEED_PROD=1 to override.", file=sys.stderr)
        sys.exit(1)


def get_or_create_offer(db, *, name: str, **kwargs) -> Offer:
    existing = db.query(Offer).filter(Offer.shop_id == DEMO_SHOP_ID, Offer.name == name).first()
    if existing:
        return existing
    return create_offer(db, shop_id=DEMO_SHOP_ID, name=name, **kwargs)


def get_or_create_affiliate(db, *, email: str, **kwargs) -> tuple[Affiliate, bool]:
    existing = db.query(Affiliate).filter(Affiliate.shop_id == DEMO_SHOP_ID, Affiliate.email == email).first()
    if existing:
        return existing, False
    return create_affiliate(db, shop_id=DEMO_SHOP_ID, email=email, **kwargs), True


def seed():
    ensure_not_production()
    Base.metadata.create_all(bind=engine)

    with SessionLocal() as db:
        # Offers
        standard = get_or_create_offer(
            db,
            name="Standard 10%",
            commission_type=CommissionTypeEnum.PERCENTAGE,
            amount=Decimal("10"),
        )
        subscription = get_or_create_offer(
            db,
            name="Subscribe & Save",
            commission_type=CommissionTypeEnum.PERCENTAGE,
            amount=Decimal("20"),
            selling_subscriptions=SellingSubscriptionsEnum.CREDIT_ALL,
            subscription_max_payments=6,
            subscription_rebill_commission_type=CommissionTypeEnum.FLAT_RATE,
            subscription_rebill_commission_value=Decimal("3"),
        )

        # Affiliates
        alice, created = get_or_create_affiliate(
            db,
            name="Alice Creator",
            email="alice@example.com",
            offer_id=standard.id,
        )
        if created:
            create_link(db, affiliate=alice, name="Homepage", destination_url="https://demo-store.example/")
            create_link(
                db,
                affiliate=alice,
                name="Spring promo",
                destination_url="https://demo-store.example/collections/spring",
                coupon_code="ALICE10",
            )

        network, created = get_or_create_affiliate(
            db,
            name="Partner Network",
            email="ops@network.example",
            offer_id=subscription.id,
            webhook_url="https://network.example/postback?tid={tid}&payout={payout}",
            webhook_parameter_mapping={
                "tid": {"type": "dynamic", "value": "transaction_id"},
                "payout": {"type": "dynamic", "value": "commission_amount"},
                "src": {"type": "fixed", "value": "shopify"},
            },
        )
        if created:
            create_link(db, affiliate=network, name="Subscriptions", destination_url="https://demo-store.example/subscribe")
            create_postback_template(
                db,
                shop_id=DEMO_SHOP_ID,
                name="Network conversion",
                base_url="https://network.example/conversion",
                param_mappings={"transaction_id": "txid", "commission_amount": "amount"},
                trigger_event=PostbackTriggerEnum.CONVERSION,
            )

        db.commit()
        print(f"Affiliate numbers: alice={alice.affiliate_number} network={network.affiliate_number}")
    print("Seed complete.")


if __name__ == "__main__":
    seed()
