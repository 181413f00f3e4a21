"""
Shopify webhook verification and payload parsing.
"""

from __future__ import annotations

import base64
import hashlib
import hmac
import json
from enum import Enum
from typing import Any

from pydantic import ValidationError

from affiliate_engine.core.errors import WebhookPayloadError
from affiliate_engine.schemas.orders import OrderEvent, RefundEvent


SHOP_DOMAIN_SUFFIX = ".myshopify.com"


class OrderTopic(str, Enum):
    CREATE = "orders/create"
    UPDATED = "orders/updated"
    PAYMENT = "order/payment"


# Older API versions and manually registered webhooks use display names.
_TOPIC_ALIASES = {
    "orders/create": OrderTopic.CREATE,
    "order creation": OrderTopic.CREATE,
    "orders/updated": OrderTopic.UPDATED,
    "order update": OrderTopic.UPDATED,
    "order/payment": OrderTopic.PAYMENT,
    "orders/paid": OrderTopic.PAYMENT,
    "order payment": OrderTopic.PAYMENT,
}


def normalize_topic(topic: str | None) -> OrderTopic | None:
    if not topic:
        return None
    return _TOPIC_ALIASES.get(topic.strip().lower())


def normalize_shop_id(shop_domain: str) -> str:
    value = (shop_domain or "").strip().lower()
    if value.endswith(SHOP_DOMAIN_SUFFIX):
        value = value[: -len(SHOP_DOMAIN_SUFFIX)]
    return value


def compute_shopify_hmac(raw_body: bytes, secret: str) -> str:
    digest = hmac.new(secret.encode("utf-8"), raw_body, hashlib.sha256).digest()
    return base64.b64encode(digest).decode("ascii")


def verify_shopify_hmac(raw_body: bytes, header: str | None, secret: str | None) -> bool:
    """Constant-time check of X-Shopify-Hmac-Sha256 over the exact raw body."""
    if not header or not secret:
        return False
    expected = compute_shopify_hmac(raw_body, secret)
    return hmac.compare_digest(expected.encode("ascii"), header.strip().encode("ascii", "ignore"))


def _load_json_object(raw: bytes | str) -> dict[str, Any]:
    try:
        data = json.loads(raw)
    except (TypeError, ValueError) as exc:
        raise WebhookPayloadError("Invalid JSON in webhook body", code="invalid_json") from exc
    if not isinstance(data, dict):
        raise WebhookPayloadError("Webhook body must be a JSON object")
    return data


def parse_order_payload(raw: bytes | str) -> OrderEvent:
    data = _load_json_object(raw)
    try:
        return OrderEvent.model_validate(data)
    except ValidationError as exc:
        raise WebhookPayloadError(f"Invalid order payload: {exc.error_count()} error(s)") from exc


def parse_refund_payload(raw: bytes | str) -> RefundEvent:
    data = _load_json_object(raw)
    try:
        return RefundEvent.model_validate(data)
    except ValidationError as exc:
        raise WebhookPayloadError(f"Invalid refund payload: {exc.error_count()} error(s)") from exc


def is_test_webhook(order: OrderEvent, test_header: str | None) -> bool:
    return order.test or (test_header or "").strip().lower() == "true"
