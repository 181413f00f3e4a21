"""
Per-shop monotonic numbering for affiliates and offers.

The counter row is locked with SELECT ... FOR UPDATE so concurrent creators in
the same shop serialize on it. The first call for a shop seeds the counter from
the highest number already in use, which keeps numbering continuous for shops
that existed before the counter table.
"""

from __future__ import annotations

import logging

from sqlalchemy import func
from sqlalchemy.orm import Session

from affiliate_engine.models.affiliates import Affiliate, Offer
from affiliate_engine.models.enums import SequenceNameEnum
from affiliate_engine.models.sequences import ShopSequence


logger = logging.getLogger(__name__)

AFFILIATE_NUMBER_START = 30483
OFFER_NUMBER_START = 29332


def _locked_sequence(db: Session, *, shop_id: str, name: SequenceNameEnum) -> ShopSequence | None:
    return (
        db.query(ShopSequence)
        .filter(ShopSequence.shop_id == shop_id, ShopSequence.name == name)
        .with_for_update()
        .first()
    )


def _next_value(db: Session, *, shop_id: str, name: SequenceNameEnum, model, column, start: int) -> int:
    sequence = _locked_sequence(db, shop_id=shop_id, name=name)
    if sequence is None:
        current_max = db.query(func.max(column)).filter(model.shop_id == shop_id).scalar()
        seed = start - 1
        if current_max is not None and int(current_max) > seed:
            seed = int(current_max)
        sequence = ShopSequence(shop_id=shop_id, name=name, last_value=seed)
        db.add(sequence)
        # A concurrent seeder loses on uq_shop_sequences_shop_name; the caller's
        # transaction fails and can be retried.
        db.flush()
        logger.info(
            "sequence.seeded",
            extra={"shop_id": shop_id, "sequence": name.value, "seed": seed},
        )
    sequence.last_value = int(sequence.last_value) + 1
    db.flush()
    return sequence.last_value


def next_affiliate_number(db: Session, *, shop_id: str) -> int:
    return _next_value(
        db,
        shop_id=shop_id,
        name=SequenceNameEnum.AFFILIATE_NUMBER,
        model=Affiliate,
        column=Affiliate.affiliate_number,
        start=AFFILIATE_NUMBER_START,
    )


def next_offer_number(db: Session, *, shop_id: str) -> int:
    return _next_value(
        db,
        shop_id=shop_id,
        name=SequenceNameEnum.OFFER_NUMBER,
        model=Offer,
        column=Offer.offer_number,
        start=OFFER_NUMBER_START,
    )
