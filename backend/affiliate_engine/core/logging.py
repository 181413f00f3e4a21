# Structured JSON request logging.
# One record per request with latency, route, shop and request_id.

from __future__ import annotations

import json
import logging
import os
from datetime import datetime, timezone
from time import monotonic
from typing import Any

from fastapi import Request
from starlette.middleware.base import BaseHTTPMiddleware


# Attributes every LogRecord carries; anything else came in through extra=.
_RECORD_ATTRS = set(logging.LogRecord("", logging.INFO, "", 0, "", (), None).__dict__) | {"message", "asctime"}

# Emitted even when None so request lines always share a shape.
_REQUEST_FIELDS = ("request_id", "shop_id", "route", "method", "status_code", "duration_ms", "error_code")


class JsonLogFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        payload: dict[str, Any] = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        payload.update(
            (key, value)
            for key, value in record.__dict__.items()
            if key not in _RECORD_ATTRS and (value is not None or key in _REQUEST_FIELDS)
        )
        if record.exc_info:
            payload["exception"] = self.formatException(record.exc_info)
        return json.dumps(payload, separators=(",", ":"), ensure_ascii=True, default=str)


def get_structured_logger(name: str) -> logging.Logger:
    logger = logging.getLogger(name)
    if not logger.handlers:
        handler = logging.StreamHandler()
        handler.setFormatter(JsonLogFormatter())
        logger.addHandler(handler)
        logger.setLevel(os.getenv("LOG_LEVEL", "INFO").upper())
        logger.propagate = False
    return logger


logger = get_structured_logger("api_logger")


def _request_fields(request: Request, *, status_code: int, started: float, error_code: str | None) -> dict:
    route = getattr(request.scope.get("route"), "path", None)
    return {
        "request_id": getattr(request.state, "request_id", None),
        "shop_id": request.headers.get("X-Shopify-Shop-Domain") or getattr(request.state, "shop_id", None),
        "route": route or request.url.path,
        "path": request.url.path,
        "method": request.method,
        "status_code": status_code,
        "duration_ms": round((monotonic() - started) * 1000.0, 2),
        "error_code": error_code,
    }


class APILoggingMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next):
        started = monotonic()
        try:
            response = await call_next(request)
        except Exception:
            logger.exception(
                "request.failed",
                extra=_request_fields(request, status_code=500, started=started, error_code="unhandled_exception"),
            )
            raise
        logger.info(
            "request.completed",
            extra=_request_fields(
                request,
                status_code=response.status_code,
                started=started,
                error_code=response.headers.get("X-Error-Code"),
            ),
        )
        return response
