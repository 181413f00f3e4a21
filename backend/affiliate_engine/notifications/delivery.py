"""
Shared bookkeeping for delivery-attempt logs (affiliate webhooks and postbacks).
"""

from __future__ import annotations

from datetime import datetime
from typing import Union

from sqlalchemy.orm import Session

from affiliate_engine.core.metrics import record_notification
from affiliate_engine.core.time import utcnow
from affiliate_engine.models.enums import DeliveryStatusEnum
from affiliate_engine.models.webhook_logs import AffiliateWebhookLog, PostbackLog
from affiliate_engine.notifications.senders import get_sender
from affiliate_engine.notifications.senders.base import DeliveryResult, DeliverySender


DeliveryLog = Union[AffiliateWebhookLog, PostbackLog]


def apply_result(log: DeliveryLog, result: DeliveryResult, now: datetime | None = None) -> None:
    log.status = DeliveryStatusEnum.SUCCESS if result.success else DeliveryStatusEnum.FAILED
    log.response_code = result.status_code
    log.response_body = result.body
    log.error_message = result.error
    log.attempts = int(log.attempts or 0) + 1
    log.last_attempt_at = now or utcnow()


def attempt_delivery(
    db: Session,
    *,
    log: DeliveryLog,
    url: str,
    kind: str,
    sender: DeliverySender | None = None,
    now: datetime | None = None,
) -> DeliveryResult:
    """Send once, record the outcome on the log and commit."""
    sender = sender or get_sender()
    result = sender.send(url=url)
    apply_result(log, result, now)
    db.commit()
    record_notification(kind, result.success)
    return result
