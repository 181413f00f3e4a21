"""
Advisory fraud heuristics run against each new commission.

Flags never change a commission's status. Approval is refused while a flag is
unresolved; resolving is a manual review action.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional

from sqlalchemy.orm import Session

from affiliate_engine.core.config import settings
from affiliate_engine.core.metrics import fraud_flags_total
from affiliate_engine.core.time import utcnow
from affiliate_engine.crud.affiliates import get_affiliate
from affiliate_engine.crud.clicks import count_clicks_since
from affiliate_engine.crud.commissions import count_affiliate_commissions_by_status
from affiliate_engine.crud.fraud_flags import create_fraud_flag, get_fraud_flag
from affiliate_engine.models.commissions import Commission
from affiliate_engine.models.enums import CommissionStatusEnum, FraudFlagTypeEnum
from affiliate_engine.models.fraud_flags import FraudFlag


logger = logging.getLogger(__name__)

SELF_REFERRAL_EMAIL_SCORE = 50
SELF_REFERRAL_IP_SCORE = 30

COUNTED_STATUSES = (
    CommissionStatusEnum.PENDING,
    CommissionStatusEnum.ELIGIBLE,
    CommissionStatusEnum.APPROVED,
    CommissionStatusEnum.PAID,
)


@dataclass(frozen=True)
class FraudCheck:
    should_flag: bool
    flag_type: FraudFlagTypeEnum
    score: int = 0
    reason: str = ""


def _normalize_email(value: str | None) -> str:
    return (value or "").strip().lower()


def check_self_referral(
    db: Session,
    *,
    affiliate_id: int,
    affiliate_email: str | None,
    order_email: str | None,
    click_ip_hash: str | None,
    now: datetime,
) -> FraudCheck:
    score = 0
    reasons: list[str] = []
    order_norm = _normalize_email(order_email)
    if order_norm and order_norm == _normalize_email(affiliate_email):
        score += SELF_REFERRAL_EMAIL_SCORE
        reasons.append("Email matches affiliate email")

    if click_ip_hash:
        since = now - timedelta(days=settings.FRAUD_SELF_REFERRAL_LOOKBACK_DAYS)
        same_ip = count_clicks_since(db, affiliate_id=affiliate_id, since=since, ip_hash=click_ip_hash)
        if same_ip > settings.FRAUD_SELF_REFERRAL_IP_CLICKS:
            score += SELF_REFERRAL_IP_SCORE
            reasons.append(f"Same IP as affiliate with {same_ip} clicks")

    return FraudCheck(
        should_flag=score >= settings.FRAUD_SELF_REFERRAL_THRESHOLD,
        flag_type=FraudFlagTypeEnum.SELF_REFERRAL,
        score=score,
        reason="; ".join(reasons),
    )


def check_excessive_clicks(db: Session, *, affiliate_id: int, now: datetime) -> FraudCheck:
    window_hours = settings.FRAUD_EXCESSIVE_CLICKS_WINDOW_HOURS
    threshold = settings.FRAUD_EXCESSIVE_CLICKS_THRESHOLD
    count = count_clicks_since(db, affiliate_id=affiliate_id, since=now - timedelta(hours=window_hours))
    if count <= threshold:
        return FraudCheck(should_flag=False, flag_type=FraudFlagTypeEnum.EXCESSIVE_CLICKS)
    return FraudCheck(
        should_flag=True,
        flag_type=FraudFlagTypeEnum.EXCESSIVE_CLICKS,
        score=min(100, round(count / threshold * 50)),
        reason=f"{count} clicks in last {window_hours} hours",
    )


def check_high_refund_rate(db: Session, *, affiliate_id: int) -> FraudCheck:
    counts = count_affiliate_commissions_by_status(db, affiliate_id=affiliate_id)
    total = sum(counts.get(status, 0) for status in COUNTED_STATUSES)
    reversed_count = counts.get(CommissionStatusEnum.REVERSED, 0)
    if total == 0:
        return FraudCheck(should_flag=False, flag_type=FraudFlagTypeEnum.HIGH_REFUND_RATE)
    rate = reversed_count / total * 100
    threshold = settings.FRAUD_REFUND_RATE_THRESHOLD
    if rate <= threshold:
        return FraudCheck(should_flag=False, flag_type=FraudFlagTypeEnum.HIGH_REFUND_RATE)
    return FraudCheck(
        should_flag=True,
        flag_type=FraudFlagTypeEnum.HIGH_REFUND_RATE,
        score=min(100, round(rate / threshold * 50)),
        reason=f"{rate:.1f}% refund rate ({reversed_count}/{total})",
    )


def run_fraud_checks(
    db: Session,
    *,
    commission: Commission,
    order_email: Optional[str],
    click_ip_hash: Optional[str] = None,
    now: datetime | None = None,
) -> list[FraudFlag]:
    """Run all heuristics and persist a flag for each one that fires. Flushes only."""
    now = now or utcnow()
    affiliate = get_affiliate(db, affiliate_id=commission.affiliate_id)
    if affiliate is None:
        return []

    checks = [
        check_self_referral(
            db,
            affiliate_id=affiliate.id,
            affiliate_email=affiliate.email,
            order_email=order_email,
            click_ip_hash=click_ip_hash,
            now=now,
        ),
        check_excessive_clicks(db, affiliate_id=affiliate.id, now=now),
        check_high_refund_rate(db, affiliate_id=affiliate.id),
    ]

    flags: list[FraudFlag] = []
    for check in checks:
        if not check.should_flag:
            continue
        flag = create_fraud_flag(
            db,
            shop_id=commission.shop_id,
            commission_id=commission.id,
            affiliate_id=affiliate.id,
            flag_type=check.flag_type,
            score=check.score,
            reason=check.reason,
        )
        fraud_flags_total.labels(flag_type=check.flag_type.value).inc()
        logger.warning(
            "fraud.flag_raised",
            extra={
                "shop_id": commission.shop_id,
                "commission_id": commission.id,
                "affiliate_id": affiliate.id,
                "flag_type": check.flag_type.value,
                "score": check.score,
            },
        )
        flags.append(flag)
    return flags


def resolve_fraud_flag(
    db: Session,
    *,
    flag_id: int,
    note: str | None = None,
    now: datetime | None = None,
) -> FraudFlag | None:
    flag = get_fraud_flag(db, flag_id=flag_id)
    if flag is None:
        return None
    flag.resolved = True
    flag.resolved_at = now or utcnow()
    flag.resolution_note = note
    db.commit()
    db.refresh(flag)
    logger.info("fraud.flag_resolved", extra={"flag_id": flag.id, "commission_id": flag.commission_id})
    return flag
