"""
Ordered attribution strategies.

Each strategy inspects an AttributionRequest and returns an AttributionMatch,
NO_MATCH, or Blocked. The resolver walks STRATEGIES in order and stops at the
first result that is not NO_MATCH.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import Optional, Union
from urllib.parse import parse_qs, urlparse

from sqlalchemy.orm import Session

from affiliate_engine.attribution.windows import (
    is_within_attribution_window,
    window_bounds,
    window_days_for,
)
from affiliate_engine.core.config import settings
from affiliate_engine.core.metrics import attribution_email_audit_total
from affiliate_engine.crud.affiliates import (
    find_affiliate_by_email,
    find_link_by_coupon,
    get_affiliate_by_number,
)
from affiliate_engine.crud.clicks import (
    get_click,
    latest_click_for_affiliate,
    list_fingerprint_matches,
)
from affiliate_engine.models.affiliates import Affiliate
from affiliate_engine.models.clicks import Click
from affiliate_engine.models.enums import AttributionTypeEnum
from affiliate_engine.schemas.orders import INTERNAL_REFS


logger = logging.getLogger(__name__)


@dataclass
class AttributionRequest:
    shop_id: str
    shopify_order_id: str
    shopify_order_number: str
    order_created_at: datetime
    referrer_url: Optional[str] = None
    carried_click_id: Optional[str] = None
    coupon_code: Optional[str] = None
    has_internal_marker: bool = False
    order_email: Optional[str] = None
    customer_name: Optional[str] = None
    order_total: Decimal = Decimal("0")
    order_currency: str = "USD"
    ip_hash: Optional[str] = None
    user_agent_hash: Optional[str] = None
    _referrer_params: Optional[dict[str, str]] = field(default=None, init=False, repr=False)

    @property
    def referrer_params(self) -> dict[str, str]:
        if self._referrer_params is None:
            self._referrer_params = parse_referrer_params(self.referrer_url)
        return self._referrer_params

    @property
    def referrer_host(self) -> str:
        if not self.referrer_url:
            return ""
        try:
            return (urlparse(self.referrer_url).hostname or "").lower()
        except ValueError:
            return ""


@dataclass(frozen=True)
class AttributionMatch:
    affiliate: Affiliate
    click: Optional[Click]
    attribution_type: AttributionTypeEnum
    method: str


@dataclass(frozen=True)
class Blocked:
    reason: str


class _NoMatch:
    _instance = None

    def __new__(cls):
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __repr__(self) -> str:
        return "NO_MATCH"

    def __bool__(self) -> bool:
        return False


NO_MATCH = _NoMatch()

StrategyResult = Union[AttributionMatch, Blocked, _NoMatch]


def parse_referrer_params(url: str | None) -> dict[str, str]:
    if not url:
        return {}
    try:
        query = urlparse(url).query
    except ValueError:
        return {}
    parsed = parse_qs(query, keep_blank_values=False)
    return {key: values[0] for key, values in parsed.items() if values}


def _is_organic_search(host: str) -> bool:
    if not host:
        return False
    return any(host == domain or host.endswith("." + domain) for domain in settings.ORGANIC_SEARCH_DOMAINS)


def _click_in_window(click: Click | None, order_at: datetime) -> bool:
    if click is None or click.affiliate is None:
        return False
    if not click.affiliate.is_active:
        return False
    return is_within_attribution_window(click.created_at, order_at, window_days_for(click.affiliate))


class AttributionStrategy:
    name = "base"

    def evaluate(self, db: Session, request: AttributionRequest) -> StrategyResult:
        raise NotImplementedError


class InternalTrafficGuard(AttributionStrategy):
    name = "internal_traffic"

    def evaluate(self, db: Session, request: AttributionRequest) -> StrategyResult:
        ref = (request.referrer_params.get("ref") or "").lower()
        if ref in INTERNAL_REFS:
            return Blocked(reason=f"referrer ref={ref}")
        if request.has_internal_marker:
            return Blocked(reason="internal cart attribute")
        if not request.carried_click_id and _is_organic_search(request.referrer_host):
            return Blocked(reason=f"organic search referrer {request.referrer_host}")
        return NO_MATCH


class CouponStrategy(AttributionStrategy):
    name = "coupon_code"

    def evaluate(self, db: Session, request: AttributionRequest) -> StrategyResult:
        if not request.coupon_code:
            return NO_MATCH
        link = find_link_by_coupon(db, shop_id=request.shop_id, coupon_code=request.coupon_code)
        if link is None or link.affiliate is None or not link.affiliate.is_active:
            return NO_MATCH
        return AttributionMatch(
            affiliate=link.affiliate,
            click=None,
            attribution_type=AttributionTypeEnum.COUPON,
            method=self.name,
        )


class ReferrerClickIdStrategy(AttributionStrategy):
    name = "url_parameter_click_id"

    def evaluate(self, db: Session, request: AttributionRequest) -> StrategyResult:
        click_id = request.referrer_params.get("click_id")
        if not click_id:
            return NO_MATCH
        click = get_click(db, click_id=click_id)
        if click is None or click.shop_id != request.shop_id:
            return NO_MATCH
        if not _click_in_window(click, request.order_created_at):
            logger.info(
                "attribution.click_outside_window",
                extra={"shop_id": request.shop_id, "order_id": request.shopify_order_id, "click_id": click_id},
            )
            return NO_MATCH
        return AttributionMatch(
            affiliate=click.affiliate,
            click=click,
            attribution_type=AttributionTypeEnum.LINK,
            method=self.name,
        )


class ReferrerAffiliateNumberStrategy(AttributionStrategy):
    name = "url_parameter_ref"

    def evaluate(self, db: Session, request: AttributionRequest) -> StrategyResult:
        params = request.referrer_params
        if params.get("click_id"):
            return NO_MATCH
        ref = (params.get("ref") or "").strip()
        if not ref or ref.lower() in INTERNAL_REFS:
            return NO_MATCH
        try:
            affiliate_number = int(ref)
        except ValueError:
            return NO_MATCH
        affiliate = get_affiliate_by_number(db, shop_id=request.shop_id, affiliate_number=affiliate_number)
        if affiliate is None or not affiliate.is_active:
            return NO_MATCH
        start, end = window_bounds(request.order_created_at, window_days_for(affiliate))
        click = latest_click_for_affiliate(db, affiliate_id=affiliate.id, window_start=start, window_end=end)
        if click is None:
            return NO_MATCH
        return AttributionMatch(
            affiliate=affiliate,
            click=click,
            attribution_type=AttributionTypeEnum.URL_PARAM,
            method=self.name,
        )


class CarriedClickIdStrategy(AttributionStrategy):
    name = "cookie_click_id"

    def evaluate(self, db: Session, request: AttributionRequest) -> StrategyResult:
        if not request.carried_click_id:
            return NO_MATCH
        click = get_click(db, click_id=request.carried_click_id)
        if click is None or click.shop_id != request.shop_id:
            return NO_MATCH
        if not _click_in_window(click, request.order_created_at):
            logger.info(
                "attribution.click_outside_window",
                extra={
                    "shop_id": request.shop_id,
                    "order_id": request.shopify_order_id,
                    "click_id": request.carried_click_id,
                },
            )
            return NO_MATCH
        return AttributionMatch(
            affiliate=click.affiliate,
            click=click,
            attribution_type=AttributionTypeEnum.LINK,
            method=self.name,
        )


class FingerprintStrategy(AttributionStrategy):
    name = "ip_useragent_fingerprint"

    def evaluate(self, db: Session, request: AttributionRequest) -> StrategyResult:
        if not request.ip_hash or not request.user_agent_hash:
            return NO_MATCH
        start, end = window_bounds(request.order_created_at, settings.FINGERPRINT_LOOKBACK_DAYS)
        candidates = list_fingerprint_matches(
            db,
            shop_id=request.shop_id,
            ip_hash=request.ip_hash,
            user_agent_hash=request.user_agent_hash,
            since=start,
            until=end,
        )
        for click in candidates:
            if _click_in_window(click, request.order_created_at):
                return AttributionMatch(
                    affiliate=click.affiliate,
                    click=click,
                    attribution_type=AttributionTypeEnum.FINGERPRINT,
                    method=self.name,
                )
        return NO_MATCH


class EmailAuditStrategy(AttributionStrategy):
    """Never attributes. Records orders placed with an affiliate's own email."""

    name = "email_match"

    def evaluate(self, db: Session, request: AttributionRequest) -> StrategyResult:
        if not request.order_email:
            return NO_MATCH
        affiliate = find_affiliate_by_email(db, shop_id=request.shop_id, email=request.order_email)
        if affiliate is not None and affiliate.is_active:
            attribution_email_audit_total.inc()
            logger.warning(
                "attribution.email_match_audit",
                extra={
                    "shop_id": request.shop_id,
                    "order_id": request.shopify_order_id,
                    "affiliate_id": affiliate.id,
                },
            )
        return NO_MATCH


STRATEGIES: list[AttributionStrategy] = [
    InternalTrafficGuard(),
    CouponStrategy(),
    ReferrerClickIdStrategy(),
    ReferrerAffiliateNumberStrategy(),
    CarriedClickIdStrategy(),
    FingerprintStrategy(),
    EmailAuditStrategy(),
]
