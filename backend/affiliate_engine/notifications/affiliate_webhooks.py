"""
Per-affiliate conversion webhooks.

Each affiliate may configure a URL template such as
``https://tracker.example/postback?tid={tid}&payout={amount}`` together with a
parameter mapping that says where every placeholder gets its value from:

    {"tid": {"type": "dynamic", "value": "transaction_id"},
     "amount": {"type": "dynamic", "value": "commission_amount"},
     "source": {"type": "fixed", "value": "shopify"}}

Placeholders found in the template are substituted (URL-encoded). Mapped
entries that have no placeholder are appended as query parameters. Legacy
mappings store a bare field key instead of the tagged object.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Iterable, Optional, Union
from urllib.parse import parse_qsl, quote, urlencode, urlparse

from sqlalchemy.orm import Session

from affiliate_engine.core.clicks import click_url_snapshot
from affiliate_engine.core.config import settings
from affiliate_engine.core.shopify import SHOP_DOMAIN_SUFFIX
from affiliate_engine.core.time import utcnow
from affiliate_engine.crud.commissions import get_commission
from affiliate_engine.crud.webhook_logs import create_webhook_log
from affiliate_engine.models.affiliates import Affiliate, Offer
from affiliate_engine.models.attributions import OrderAttribution
from affiliate_engine.models.clicks import Click
from affiliate_engine.models.commissions import Commission
from affiliate_engine.models.enums import DeliveryStatusEnum
from affiliate_engine.notifications.delivery import attempt_delivery
from affiliate_engine.notifications.senders.base import DeliverySender

logger = logging.getLogger(__name__)

NOTIFICATION_KIND = "affiliate_webhook"

WEBHOOK_FIELD_CATALOG: dict[str, str] = {
    "commission_id": "Commission ID",
    "commission_amount": "Commission amount",
    "commission_currency": "Commission currency",
    "commission_status": "Commission status",
    "order_id": "Shopify order ID",
    "order_number": "Shopify order number",
    "order_total": "Order total",
    "order_currency": "Order currency",
    "order_date": "Commission created at (ISO 8601)",
    "customer_email": "Customer email",
    "customer_name": "Customer name",
    "affiliate_id": "Affiliate ID",
    "affiliate_number": "Affiliate number",
    "affiliate_name": "Affiliate name",
    "affiliate_email": "Affiliate email",
    "click_id": "Click ID",
    "landing_url": "Landing URL",
    "offer_id": "Offer ID",
    "offer_name": "Offer name",
    "transaction_id": "Transaction ID from the click URL",
    "affiliate_id_url": "affiliate_id from the click URL",
    "postback_affiliate_id": "Stored postback affiliate_id",
    "sub1": "sub1 from the click URL",
    "sub2": "sub2 from the click URL",
    "sub3": "sub3 from the click URL",
    "sub4": "sub4 from the click URL",
    "postback_sub1": "Stored postback sub1",
    "postback_sub2": "Stored postback sub2",
    "postback_sub3": "Stored postback sub3",
    "postback_sub4": "Stored postback sub4",
}

_PLACEHOLDER_RE = re.compile(r"\{([^{}]+)\}")


@dataclass(frozen=True)
class FixedValue:
    value: str


@dataclass(frozen=True)
class DynamicField:
    key: str


MappingEntry = Union[FixedValue, DynamicField]


@dataclass(frozen=True)
class RenderedUrl:
    url: str
    params: dict[str, str]


@dataclass(frozen=True)
class DeliveryOutcome:
    attempted: bool
    success: bool
    log_id: Optional[int] = None
    reason: Optional[str] = None


def parse_parameter_mapping(
    raw: Any,
    extra_keys: Iterable[str] = (),
) -> dict[str, MappingEntry]:
    """
    Parse the stored JSON mapping. Dynamic keys must be catalog fields or one
    of ``extra_keys`` (raw URL params of the converting click); anything else
    is dropped.
    """
    if not isinstance(raw, dict):
        return {}
    allowed = set(WEBHOOK_FIELD_CATALOG) | {str(key) for key in extra_keys}
    parsed: dict[str, MappingEntry] = {}
    for placeholder, entry in raw.items():
        name = str(placeholder).strip()
        if not name:
            continue
        if isinstance(entry, str):
            # legacy: bare field key
            if entry in allowed:
                parsed[name] = DynamicField(entry)
            continue
        if not isinstance(entry, dict):
            continue
        kind = entry.get("type")
        value = entry.get("value")
        if value is None:
            continue
        if kind == "fixed":
            parsed[name] = FixedValue(str(value))
        elif kind == "dynamic" and str(value) in allowed:
            parsed[name] = DynamicField(str(value))
    return parsed


def _text(value: Any) -> str:
    if value is None:
        return ""
    return str(value)


def build_webhook_data_map(
    commission: Commission,
    attribution: OrderAttribution | None,
    click: Click | None,
    affiliate: Affiliate,
    offer: Offer | None,
) -> dict[str, str]:
    snapshot = commission.rule_snapshot if isinstance(commission.rule_snapshot, dict) else {}

    def click_or_stored(column: str, fallback: Optional[str]) -> str:
        value = getattr(click, column, None) if click is not None else None
        return _text(value or fallback)

    data = {
        "commission_id": _text(commission.id),
        "commission_amount": f"{commission.amount:.2f}" if commission.amount is not None else "",
        "commission_currency": _text(commission.currency),
        "commission_status": commission.status.value if commission.status else "",
        "order_id": _text(commission.shopify_order_id),
        "order_number": _text(attribution.shopify_order_number if attribution else None),
        "order_total": f"{attribution.order_total:.2f}" if attribution and attribution.order_total is not None else "",
        "order_currency": _text(attribution.order_currency if attribution else None),
        "order_date": commission.created_at.isoformat() if commission.created_at else "",
        "customer_email": _text(attribution.customer_email if attribution else None),
        "customer_name": _text(attribution.customer_name if attribution else None),
        "affiliate_id": _text(affiliate.id),
        "affiliate_number": _text(affiliate.affiliate_number),
        "affiliate_name": _text(affiliate.name),
        "affiliate_email": _text(affiliate.email),
        "click_id": _text(click.id if click is not None else None),
        "landing_url": _text(click.landing_url if click is not None else None),
        "offer_id": _text(snapshot.get("offer_id") or (offer.id if offer else None)),
        "offer_name": _text(snapshot.get("offer_name") or (offer.name if offer else None)),
        "transaction_id": click_or_stored("url_transaction_id", affiliate.postback_transaction_id),
        "affiliate_id_url": click_or_stored("url_affiliate_id", affiliate.postback_affiliate_id),
        "postback_affiliate_id": _text(affiliate.postback_affiliate_id),
        "sub1": click_or_stored("url_sub1", affiliate.postback_sub1),
        "sub2": click_or_stored("url_sub2", affiliate.postback_sub2),
        "sub3": click_or_stored("url_sub3", affiliate.postback_sub3),
        "sub4": click_or_stored("url_sub4", affiliate.postback_sub4),
        "postback_sub1": _text(affiliate.postback_sub1),
        "postback_sub2": _text(affiliate.postback_sub2),
        "postback_sub3": _text(affiliate.postback_sub3),
        "postback_sub4": _text(affiliate.postback_sub4),
    }
    # Raw click params are available under their own names; catalog fields win.
    for key, value in click_url_snapshot(click).items():
        data.setdefault(key, value)
    return data


def _resolve(entry: MappingEntry, data_map: dict[str, str]) -> Optional[str]:
    if isinstance(entry, FixedValue):
        return entry.value
    return data_map.get(entry.key)


def render_webhook_url(
    template: str,
    mapping: dict[str, MappingEntry],
    data_map: dict[str, str],
) -> RenderedUrl:
    url = template
    consumed: set[str] = set()
    for placeholder in dict.fromkeys(_PLACEHOLDER_RE.findall(template)):
        entry = mapping.get(placeholder)
        if entry is None:
            continue
        value = _resolve(entry, data_map)
        if value is None:
            continue
        url = url.replace("{" + placeholder + "}", quote(value, safe=""))
        consumed.add(placeholder)

    extra = []
    for name, entry in mapping.items():
        if name in consumed:
            continue
        value = _resolve(entry, data_map)
        if value is None:
            continue
        extra.append((name, value))
    if extra:
        separator = "&" if "?" in url else "?"
        url = f"{url}{separator}{urlencode(extra)}"

    params = dict(parse_qsl(urlparse(url).query, keep_blank_values=True))
    return RenderedUrl(url=url, params=params)


def _bare_host(value: str) -> str:
    host = value.strip().lower()
    if "://" in host:
        host = urlparse(host).hostname or ""
    host = host.split("/")[0].split(":")[0]
    if host.startswith("www."):
        host = host[4:]
    return host


def is_store_domain(url: str, store_domains: Iterable[str] | None = None) -> bool:
    host = _bare_host(urlparse(url).hostname or "")
    if not host:
        return False
    domains = settings.STORE_DOMAINS if store_domains is None else store_domains
    for domain in domains:
        bare = _bare_host(domain)
        if bare and (host == bare or host.endswith("." + bare)):
            return True
    return False


def fire_affiliate_webhook(
    db: Session,
    *,
    commission_id: int,
    sender: DeliverySender | None = None,
    now: datetime | None = None,
) -> DeliveryOutcome:
    now = now or utcnow()
    commission = get_commission(db, commission_id=commission_id)
    if commission is None:
        return DeliveryOutcome(attempted=False, success=False, reason="commission_not_found")
    affiliate = commission.affiliate
    if affiliate is None or not affiliate.webhook_url:
        return DeliveryOutcome(attempted=False, success=False, reason="not_configured")

    attribution = commission.order_attribution
    click = attribution.click if attribution is not None else None
    data_map = build_webhook_data_map(commission, attribution, click, affiliate, affiliate.offer)
    mapping = parse_parameter_mapping(
        affiliate.webhook_parameter_mapping,
        extra_keys=click_url_snapshot(click).keys(),
    )
    rendered = render_webhook_url(affiliate.webhook_url, mapping, data_map)

    # The shop's own myshopify host is always the store, configured or not.
    store_domains = [*settings.STORE_DOMAINS, commission.shop_id + SHOP_DOMAIN_SUFFIX]
    if is_store_domain(rendered.url, store_domains):
        log = create_webhook_log(
            db,
            shop_id=commission.shop_id,
            commission_id=commission.id,
            affiliate_id=affiliate.id,
            webhook_url=rendered.url,
            request_params={},
            status=DeliveryStatusEnum.FAILED,
            error_message="Skipped: webhook URL points to the store's own domain",
        )
        logger.warning(
            "affiliate_webhook.store_domain_refused",
            extra={"shop_id": commission.shop_id, "affiliate_id": affiliate.id, "commission_id": commission.id},
        )
        return DeliveryOutcome(attempted=False, success=False, log_id=log.id, reason="store_domain")

    log = create_webhook_log(
        db,
        shop_id=commission.shop_id,
        commission_id=commission.id,
        affiliate_id=affiliate.id,
        webhook_url=rendered.url,
        request_params=rendered.params,
    )
    result = attempt_delivery(db, log=log, url=rendered.url, kind=NOTIFICATION_KIND, sender=sender, now=now)
    logger.info(
        "affiliate_webhook.sent" if result.success else "affiliate_webhook.failed",
        extra={
            "shop_id": commission.shop_id,
            "affiliate_id": affiliate.id,
            "commission_id": commission.id,
            "status_code": result.status_code,
            "error": result.error,
        },
    )
    return DeliveryOutcome(
        attempted=True,
        success=result.success,
        log_id=log.id,
        reason=None if result.success else "delivery_failed",
    )
