from __future__ import annotations

import requests

from affiliate_engine.core.config import settings
from affiliate_engine.notifications.senders.base import DeliveryResult, DeliverySender


TRUNCATED_SUFFIX = "... (truncated)"


def truncate_body(body: str | None, limit: int | None = None) -> str | None:
    if body is None:
        return None
    limit = limit or settings.WEBHOOK_RESPONSE_MAX_CHARS
    if len(body) > limit:
        return body[:limit] + TRUNCATED_SUFFIX
    return body


class HttpGetSender(DeliverySender):
    """Plain GET with a hard timeout. Never raises for network failures."""

    def __init__(self, *, timeout: float | None = None, user_agent: str | None = None):
        self.timeout = timeout if timeout is not None else settings.WEBHOOK_TIMEOUT_SECONDS
        self.user_agent = user_agent or settings.WEBHOOK_USER_AGENT

    def send(self, *, url: str) -> DeliveryResult:
        try:
            resp = requests.get(url, headers={"User-Agent": self.user_agent}, timeout=self.timeout)
        except requests.Timeout:
            return DeliveryResult(success=False, error=f"Request timeout ({self.timeout:g}s)")
        except requests.RequestException as exc:
            return DeliveryResult(success=False, error=str(exc) or exc.__class__.__name__)

        body = truncate_body(resp.text or "")
        success = 200 <= resp.status_code < 300
        error = None
        if not success:
            error = f"HTTP {resp.status_code}: {(body or '')[:200] or 'No response body'}"
        return DeliveryResult(success=success, status_code=resp.status_code, body=body, error=error)
