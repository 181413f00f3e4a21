from __future__ import annotations

import argparse
import logging
import time
from datetime import datetime, timedelta

from sqlalchemy.orm import Session

from affiliate_engine.core.config import settings
from affiliate_engine.core.db import SessionLocal
from affiliate_engine.core.metrics import record_job_run
from affiliate_engine.core.time import utcnow
from affiliate_engine.crud.webhook_logs import list_retryable_postback_logs, list_retryable_webhook_logs
from affiliate_engine.notifications.affiliate_webhooks import NOTIFICATION_KIND as WEBHOOK_KIND
from affiliate_engine.notifications.delivery import attempt_delivery
from affiliate_engine.notifications.postbacks import NOTIFICATION_KIND as POSTBACK_KIND
from affiliate_engine.notifications.senders import get_sender
from affiliate_engine.notifications.senders.base import DeliverySender


logger = logging.getLogger(__name__)

DEFAULT_BATCH_SIZE = 100
DEFAULT_INTERVAL_SECONDS = 300


def run_webhook_retry(
    db: Session,
    *,
    batch_size: int = DEFAULT_BATCH_SIZE,
    max_attempts: int | None = None,
    min_gap_seconds: int | None = None,
    sender: DeliverySender | None = None,
    now: datetime | None = None,
) -> int:
    """Re-send failed affiliate webhooks and postbacks. Returns the number of attempts made."""
    now = now or utcnow()
    max_attempts = max_attempts or settings.WEBHOOK_MAX_ATTEMPTS
    if min_gap_seconds is None:
        min_gap_seconds = settings.WEBHOOK_RETRY_MIN_GAP_SECONDS
    attempted_before = now - timedelta(seconds=min_gap_seconds)
    sender = sender or get_sender()

    processed = 0
    webhook_logs = list_retryable_webhook_logs(
        db,
        max_attempts=max_attempts,
        attempted_before=attempted_before,
        limit=batch_size,
    )
    for log in webhook_logs:
        result = attempt_delivery(db, log=log, url=log.webhook_url, kind=WEBHOOK_KIND, sender=sender, now=now)
        logger.info(
            "affiliate_webhook.retried",
            extra={"log_id": log.id, "commission_id": log.commission_id, "success": result.success, "attempts": log.attempts},
        )
        processed += 1

    remaining = max(batch_size - processed, 0)
    if remaining:
        postback_logs = list_retryable_postback_logs(
            db,
            max_attempts=max_attempts,
            attempted_before=attempted_before,
            limit=remaining,
        )
        for log in postback_logs:
            result = attempt_delivery(db, log=log, url=log.url, kind=POSTBACK_KIND, sender=sender, now=now)
            logger.info(
                "postback.retried",
                extra={"log_id": log.id, "commission_id": log.commission_id, "success": result.success, "attempts": log.attempts},
            )
            processed += 1
    return processed


def _parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Retry failed affiliate webhooks and postbacks.")
    parser.add_argument("--once", action="store_true", help="Run once and exit.")
    parser.add_argument("--interval-seconds", type=int, default=DEFAULT_INTERVAL_SECONDS)
    parser.add_argument("--batch-size", type=int, default=DEFAULT_BATCH_SIZE)
    parser.add_argument("--max-attempts", type=int, default=settings.WEBHOOK_MAX_ATTEMPTS)
    parser.add_argument("--min-gap-seconds", type=int, default=settings.WEBHOOK_RETRY_MIN_GAP_SECONDS)
    return parser.parse_args(argv)


def _run_sweep(args: argparse.Namespace) -> int:
    processed = 0
    success = True
    try:
        with SessionLocal() as db:
            processed = run_webhook_retry(
                db,
                batch_size=args.batch_size,
                max_attempts=args.max_attempts,
                min_gap_seconds=args.min_gap_seconds,
            )
        logger.info("Webhook retry run complete. processed=%s", processed)
    except Exception:
        success = False
        logger.exception("Webhook retry failed")
        raise
    finally:
        record_job_run(job_name="postback_retry", success=success)
    return processed


def main(argv: list[str] | None = None) -> None:
    args = _parse_args(argv)
    while True:
        _run_sweep(args)
        if args.once:
            return
        time.sleep(args.interval_seconds)


if __name__ == "__main__":
    main()
