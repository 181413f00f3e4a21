from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Optional, Sequence

from sqlalchemy.orm import Session

from affiliate_engine.attribution.strategies import (
    NO_MATCH,
    STRATEGIES,
    AttributionMatch,
    AttributionRequest,
    AttributionStrategy,
    Blocked,
)
from affiliate_engine.core.clicks import click_url_snapshot
from affiliate_engine.core.commissions import REATTRIBUTION_REASON, reverse_commissions_for_order
from affiliate_engine.core.time import utcnow
from affiliate_engine.crud.attributions import get_attribution_by_order, upsert_order_attribution
from affiliate_engine.models.attributions import OrderAttribution


logger = logging.getLogger(__name__)


@dataclass
class AttributionOutcome:
    attribution: Optional[OrderAttribution]
    match: Optional[AttributionMatch] = None
    blocked: Optional[Blocked] = None
    reversed_commission_ids: list[int] = field(default_factory=list)


def run_strategies(
    db: Session,
    request: AttributionRequest,
    strategies: Sequence[AttributionStrategy] = STRATEGIES,
) -> AttributionMatch | Blocked | None:
    for strategy in strategies:
        result = strategy.evaluate(db, request)
        if result is NO_MATCH:
            continue
        return result
    return None


def resolve_order_attribution(
    db: Session,
    order: AttributionRequest,
    now: datetime | None = None,
    strategies: Sequence[AttributionStrategy] = STRATEGIES,
) -> AttributionOutcome:
    """Find the affiliate owed credit for an order and upsert its OrderAttribution.

    Commits on success. Returns an outcome with ``attribution=None`` when the
    order is internal traffic or no strategy matched; nothing is written then.
    """
    now = now or utcnow()
    result = run_strategies(db, order, strategies)
    log_extra = {"shop_id": order.shop_id, "order_id": order.shopify_order_id}

    if isinstance(result, Blocked):
        logger.info("attribution.internal_traffic", extra={**log_extra, "reason": result.reason})
        return AttributionOutcome(attribution=None, blocked=result)
    if result is None:
        logger.info(
            "attribution.not_found",
            extra={
                **log_extra,
                "has_click_id": bool(order.carried_click_id),
                "has_coupon": bool(order.coupon_code),
                "has_fingerprint": bool(order.ip_hash and order.user_agent_hash),
            },
        )
        return AttributionOutcome(attribution=None)

    reversed_ids: list[int] = []
    existing = get_attribution_by_order(db, shopify_order_id=order.shopify_order_id)
    if existing is not None and existing.affiliate_id != result.affiliate.id:
        reversed_ids = reverse_commissions_for_order(
            db,
            shop_id=order.shop_id,
            shopify_order_id=order.shopify_order_id,
            reason=REATTRIBUTION_REASON,
            now=now,
            commit=False,
        )
        logger.warning(
            "attribution.reattributed",
            extra={
                **log_extra,
                "previous_affiliate_id": existing.affiliate_id,
                "affiliate_id": result.affiliate.id,
                "reversed_commission_ids": reversed_ids,
            },
        )

    snapshot = click_url_snapshot(result.click)
    attribution = upsert_order_attribution(
        db,
        shopify_order_id=order.shopify_order_id,
        values={
            "shop_id": order.shop_id,
            "shopify_order_number": order.shopify_order_number,
            "affiliate_id": result.affiliate.id,
            "click_id": result.click.id if result.click is not None else None,
            "attribution_type": result.attribution_type,
            "attribution_method": result.method,
            "customer_email": order.order_email,
            "customer_name": order.customer_name,
            "order_total": order.order_total,
            "order_currency": order.order_currency,
            "landing_url_params": snapshot or None,
        },
    )
    db.commit()
    db.refresh(attribution)
    logger.info(
        "attribution.resolved",
        extra={
            **log_extra,
            "affiliate_id": result.affiliate.id,
            "click_id": attribution.click_id,
            "method": result.method,
        },
    )
    return AttributionOutcome(
        attribution=attribution,
        match=result,
        reversed_commission_ids=reversed_ids,
    )
