from __future__ import annotations

import argparse
import logging
from datetime import datetime, timedelta

from sqlalchemy.orm import Session

from affiliate_engine.core.config import settings
from affiliate_engine.core.db import SessionLocal
from affiliate_engine.core.metrics import record_job_run
from affiliate_engine.core.time import utcnow
from affiliate_engine.crud.clicks import delete_unreferenced_clicks_before


logger = logging.getLogger(__name__)


def run_click_retention(
    db: Session,
    *,
    retention_days: int | None = None,
    dry_run: bool = False,
    now: datetime | None = None,
) -> int:
    """Delete clicks past retention that no order attribution points at."""
    days = retention_days or settings.CLICK_RETENTION_DAYS
    cutoff = (now or utcnow()) - timedelta(days=days)
    deleted = delete_unreferenced_clicks_before(db, cutoff=cutoff, dry_run=dry_run)
    logger.info(
        "click_retention.completed",
        extra={"cutoff": cutoff.isoformat(), "clicks": deleted, "dry_run": dry_run},
    )
    return deleted


def _parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Delete old unattributed clicks.")
    parser.add_argument("--retention-days", type=int, default=None)
    parser.add_argument("--dry-run", action="store_true", help="Count matching clicks without deleting.")
    return parser.parse_args()


def main() -> None:
    args = _parse_args()
    success = True
    try:
        with SessionLocal() as db:
            run_click_retention(db, retention_days=args.retention_days, dry_run=args.dry_run)
    except Exception:
        success = False
        logger.exception("Click retention failed")
        raise
    finally:
        record_job_run(job_name="click_retention", success=success)


if __name__ == "__main__":
    main()
