from __future__ import annotations

from datetime import datetime, timedelta

from affiliate_engine.core.config import settings
from affiliate_engine.models.affiliates import Affiliate


def _to_second(value: datetime) -> datetime:
    return value.replace(microsecond=0)


def is_within_attribution_window(click_at: datetime, order_at: datetime, days: int) -> bool:
    """order_at - days <= click_at <= order_at, both ends inclusive, at second precision."""
    click_at = _to_second(click_at)
    order_at = _to_second(order_at)
    window_start = order_at - timedelta(days=days)
    return window_start <= click_at <= order_at


def window_days_for(affiliate: Affiliate | None) -> int:
    if affiliate is not None and affiliate.offer is not None and affiliate.offer.attribution_window_days:
        return int(affiliate.offer.attribution_window_days)
    return settings.DEFAULT_ATTRIBUTION_WINDOW_DAYS


def window_bounds(order_at: datetime, days: int) -> tuple[datetime, datetime]:
    # Stored timestamps keep microseconds, so the upper bound is padded to the
    # end of the order's second to stay consistent with the check above.
    end = _to_second(order_at) + timedelta(microseconds=999999)
    start = _to_second(order_at) - timedelta(days=days)
    return start, end
