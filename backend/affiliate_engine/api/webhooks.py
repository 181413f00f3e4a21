from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, Request
from fastapi.concurrency import run_in_threadpool
from fastapi.responses import JSONResponse
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from affiliate_engine.core.config import settings
from affiliate_engine.core.db import get_db
from affiliate_engine.core.errors import (
    WebhookConfigurationError,
    WebhookPayloadError,
    WebhookVerificationError,
)
from affiliate_engine.core.order_ingest import IngestOutcome, process_order_event, process_refund_event
from affiliate_engine.core.shopify import (
    is_test_webhook,
    normalize_shop_id,
    parse_order_payload,
    parse_refund_payload,
    verify_shopify_hmac,
)
from affiliate_engine.schemas.orders import WebhookAck


router = APIRouter(prefix="/webhooks", tags=["webhooks"])
logger = logging.getLogger(__name__)


async def _verified_body(request: Request) -> tuple[bytes, str]:
    """Return the raw body and shop id, or raise when the webhook cannot be trusted."""
    raw_body = await request.body()
    hmac_header = request.headers.get("X-Shopify-Hmac-Sha256")
    shop_domain = request.headers.get("X-Shopify-Shop-Domain")
    if not hmac_header or not shop_domain:
        raise WebhookPayloadError("Missing required headers", code="missing_headers")
    secret = settings.shopify_webhook_secret
    if not secret:
        logger.error("webhook.secret_missing", extra={"shop_id": shop_domain})
        raise WebhookConfigurationError()
    if not verify_shopify_hmac(raw_body, hmac_header, secret):
        logger.warning(
            "webhook.invalid_hmac",
            extra={"shop_id": shop_domain, "path": request.url.path, "body_length": len(raw_body)},
        )
        raise WebhookVerificationError()
    return raw_body, normalize_shop_id(shop_domain)


def _database_unavailable(exc: SQLAlchemyError, *, shop_id: str, path: str) -> JSONResponse:
    logger.exception("webhook.database_error", extra={"shop_id": shop_id, "path": path})
    response = JSONResponse(
        status_code=503,
        content={"detail": "Database unavailable", "code": "database_error"},
    )
    response.headers["X-Error-Code"] = "database_error"
    return response


@router.post("/orders", response_model=WebhookAck)
async def order_webhook(request: Request, db: Session = Depends(get_db)):
    raw_body, shop_id = await _verified_body(request)
    order = parse_order_payload(raw_body)

    if is_test_webhook(order, request.headers.get("X-Shopify-Test")):
        logger.info("order_webhook.test", extra={"shop_id": shop_id, "order_id": order.order_id})
        return WebhookAck(received=True, outcome=IngestOutcome.TEST.value, test=True)

    try:
        # Ingest fires outbound webhooks; keep it off the event loop.
        result = await run_in_threadpool(
            process_order_event,
            db,
            topic=request.headers.get("X-Shopify-Topic"),
            shop_id=shop_id,
            order=order,
            request_ip=getattr(request.state, "client_ip", None),
            request_user_agent=request.headers.get("User-Agent"),
        )
    except SQLAlchemyError as exc:
        db.rollback()
        return _database_unavailable(exc, shop_id=shop_id, path=request.url.path)
    return WebhookAck(received=True, outcome=result.outcome.value)


@router.post("/refunds", response_model=WebhookAck)
async def refund_webhook(request: Request, db: Session = Depends(get_db)):
    raw_body, shop_id = await _verified_body(request)
    refund = parse_refund_payload(raw_body)
    try:
        result = await run_in_threadpool(process_refund_event, db, shop_id=shop_id, refund=refund)
    except SQLAlchemyError as exc:
        db.rollback()
        return _database_unavailable(exc, shop_id=shop_id, path=request.url.path)
    return WebhookAck(received=True, outcome=result.outcome.value)
