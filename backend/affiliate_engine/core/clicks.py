"""
Referral click store: bot filtering, deduplication and the /track beacon flow.
"""

from __future__ import annotations

import logging
import re
import secrets
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any

from sqlalchemy.orm import Session

from affiliate_engine.core.config import settings
from affiliate_engine.core.errors import ClickRejected
from affiliate_engine.core.metrics import clicks_tracked_total
from affiliate_engine.core.privacy import hash_ip, hash_user_agent
from affiliate_engine.core.shopify import normalize_shop_id
from affiliate_engine.core.time import utcnow
from affiliate_engine.crud.affiliates import get_affiliate_by_number, store_postback_params
from affiliate_engine.crud.clicks import find_recent_duplicate
from affiliate_engine.models.clicks import Click
from affiliate_engine.schemas.clicks import POSTBACK_PARAM_KEYS, TrackClickRequest
from affiliate_engine.schemas.orders import INTERNAL_REFS


logger = logging.getLogger(__name__)

BOT_PATTERNS = [
    re.compile(pattern, re.IGNORECASE)
    for pattern in (
        r"bot",
        r"crawler",
        r"spider",
        r"scraper",
        r"curl",
        r"wget",
        r"python",
        r"java",
        r"headless",
        r"phantom",
        r"selenium",
    )
]

# Dedicated click columns for the well-known postback params.
_PARAM_COLUMNS = {
    "transaction_id": "url_transaction_id",
    "affiliate_id": "url_affiliate_id",
    "sub1": "url_sub1",
    "sub2": "url_sub2",
    "sub3": "url_sub3",
    "sub4": "url_sub4",
}


@dataclass(frozen=True)
class ClickRecordResult:
    click_id: str
    deduplicated: bool


@dataclass(frozen=True)
class TrackedClick:
    click_id: str
    affiliate_id: int
    affiliate_number: int
    deduplicated: bool


def generate_click_id() -> str:
    return secrets.token_hex(16)


def is_bot_user_agent(user_agent: str | None) -> bool:
    if not user_agent:
        return False
    lowered = user_agent.lower()
    if any(marker.lower() in lowered for marker in settings.BOT_ALLOWED_MARKERS):
        return False
    return any(pattern.search(user_agent) for pattern in BOT_PATTERNS)


def _clean_params(url_params: dict[str, Any] | None) -> dict[str, str]:
    if not url_params:
        return {}
    return {
        str(key): str(value)
        for key, value in url_params.items()
        if value is not None and str(value) != ""
    }


def merge_url_params(existing: dict[str, Any] | None, incoming: dict[str, Any] | None) -> dict[str, str]:
    """New non-empty values win per key; keys without a new value keep the old one."""
    merged = _clean_params(existing)
    merged.update(_clean_params(incoming))
    return merged


def record_click(
    db: Session,
    *,
    shop_id: str,
    affiliate_id: int,
    landing_url: str,
    ip_hash: str,
    user_agent_hash: str,
    url_params: dict[str, Any] | None = None,
    link_id: int | None = None,
    referrer: str | None = None,
    now: datetime | None = None,
) -> ClickRecordResult:
    now = now or utcnow()
    params = _clean_params(url_params)
    dedupe_since = now - timedelta(seconds=settings.CLICK_DEDUPE_WINDOW_SECONDS)

    existing = find_recent_duplicate(
        db,
        shop_id=shop_id,
        affiliate_id=affiliate_id,
        ip_hash=ip_hash,
        user_agent_hash=user_agent_hash,
        since=dedupe_since,
    )
    if existing is not None and existing.created_at <= now:
        if params:
            existing.url_params = merge_url_params(existing.url_params, params)
            for key, column in _PARAM_COLUMNS.items():
                if params.get(key):
                    setattr(existing, column, params[key])
        db.commit()
        logger.info(
            "click.deduplicated",
            extra={"shop_id": shop_id, "affiliate_id": affiliate_id, "click_id": existing.id},
        )
        return ClickRecordResult(click_id=existing.id, deduplicated=True)

    click = Click(
        id=generate_click_id(),
        shop_id=shop_id,
        affiliate_id=affiliate_id,
        link_id=link_id,
        landing_url=landing_url or "/",
        referrer=referrer or None,
        ip_hash=ip_hash,
        user_agent_hash=user_agent_hash,
        url_params=params or None,
        created_at=now,
        updated_at=now,
    )
    for key, column in _PARAM_COLUMNS.items():
        if params.get(key):
            setattr(click, column, params[key])
    db.add(click)
    db.commit()
    logger.info(
        "click.recorded",
        extra={"shop_id": shop_id, "affiliate_id": affiliate_id, "click_id": click.id},
    )
    return ClickRecordResult(click_id=click.id, deduplicated=False)


def _reject(message: str, *, code: str, status_code: int = 400) -> ClickRejected:
    clicks_tracked_total.labels(outcome="rejected").inc()
    return ClickRejected(message, code=code, status_code=status_code)


def track_click(
    db: Session,
    *,
    payload: TrackClickRequest,
    client_ip: str | None,
    user_agent: str | None,
    now: datetime | None = None,
) -> TrackedClick:
    ref = (payload.ref or "").strip()
    if ref.lower() in INTERNAL_REFS:
        raise _reject("Internal traffic - no tracking", code="internal_traffic")
    if not ref or not payload.shop:
        raise _reject("Missing ref parameter or shop", code="missing_ref")
    try:
        affiliate_number = int(ref)
    except ValueError:
        raise _reject("Invalid affiliate number", code="invalid_affiliate_number") from None

    shop_id = normalize_shop_id(payload.shop)
    effective_ua = user_agent or payload.user_agent_hint or ""
    if is_bot_user_agent(effective_ua):
        logger.info("click.bot_rejected", extra={"shop_id": shop_id, "affiliate_number": affiliate_number})
        raise _reject("Bot detected - no tracking", code="bot_detected")

    affiliate = get_affiliate_by_number(db, shop_id=shop_id, affiliate_number=affiliate_number)
    if affiliate is None or not affiliate.is_active:
        raise _reject("Affiliate not found or inactive", code="affiliate_not_found", status_code=404)

    postback = payload.postback_params()
    if any(postback.values()):
        store_postback_params(db, affiliate=affiliate, params=postback)

    url_params = payload.stored_url_params()
    for key in POSTBACK_PARAM_KEYS:
        if postback.get(key) and key not in url_params:
            url_params[key] = postback[key]

    result = record_click(
        db,
        shop_id=shop_id,
        affiliate_id=affiliate.id,
        landing_url=payload.landing_url or "/",
        ip_hash=hash_ip(shop_id, client_ip),
        user_agent_hash=hash_user_agent(shop_id, effective_ua),
        url_params=url_params,
        referrer=payload.referrer,
        now=now,
    )
    clicks_tracked_total.labels(outcome="deduplicated" if result.deduplicated else "recorded").inc()
    return TrackedClick(
        click_id=result.click_id,
        affiliate_id=affiliate.id,
        affiliate_number=affiliate.affiliate_number,
        deduplicated=result.deduplicated,
    )


def click_url_snapshot(click: Click | None) -> dict[str, str]:
    """Raw URL params of a click with the dedicated postback columns laid over them."""
    if click is None:
        return {}
    snapshot = _clean_params(click.url_params if isinstance(click.url_params, dict) else None)
    for key, column in _PARAM_COLUMNS.items():
        value = getattr(click, column)
        if value:
            snapshot[key] = value
    return snapshot
