from __future__ import annotations

from datetime import datetime

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from affiliate_engine.models.attributions import OrderAttribution
from affiliate_engine.models.clicks import Click


def get_click(db: Session, *, click_id: str) -> Click | None:
    if not click_id:
        return None
    return db.query(Click).filter(Click.id == click_id).first()


def find_recent_duplicate(
    db: Session,
    *,
    shop_id: str,
    affiliate_id: int,
    ip_hash: str,
    user_agent_hash: str,
    since: datetime,
) -> Click | None:
    return (
        db.query(Click)
        .filter(
            Click.shop_id == shop_id,
            Click.affiliate_id == affiliate_id,
            Click.ip_hash == ip_hash,
            Click.user_agent_hash == user_agent_hash,
            Click.created_at >= since,
        )
        .order_by(Click.created_at.desc())
        .first()
    )


def latest_click_for_affiliate(
    db: Session,
    *,
    affiliate_id: int,
    window_start: datetime,
    window_end: datetime,
) -> Click | None:
    return (
        db.query(Click)
        .filter(
            Click.affiliate_id == affiliate_id,
            Click.created_at >= window_start,
            Click.created_at <= window_end,
        )
        .order_by(Click.created_at.desc())
        .first()
    )


def list_fingerprint_matches(
    db: Session,
    *,
    shop_id: str,
    ip_hash: str,
    user_agent_hash: str,
    since: datetime,
    until: datetime,
) -> list[Click]:
    return (
        db.query(Click)
        .filter(
            Click.shop_id == shop_id,
            Click.ip_hash == ip_hash,
            Click.user_agent_hash == user_agent_hash,
            Click.created_at >= since,
            Click.created_at <= until,
        )
        .order_by(Click.created_at.desc())
        .all()
    )


def count_clicks_since(
    db: Session,
    *,
    affiliate_id: int,
    since: datetime,
    ip_hash: str | None = None,
) -> int:
    query = db.query(func.count(Click.id)).filter(
        Click.affiliate_id == affiliate_id,
        Click.created_at >= since,
    )
    if ip_hash is not None:
        query = query.filter(Click.ip_hash == ip_hash)
    return int(query.scalar() or 0)


def delete_unreferenced_clicks_before(db: Session, *, cutoff: datetime, dry_run: bool = False) -> int:
    referenced = select(OrderAttribution.click_id).where(OrderAttribution.click_id.isnot(None))
    query = db.query(Click).filter(Click.created_at < cutoff, Click.id.notin_(referenced))
    if dry_run:
        return query.count()
    deleted = query.delete(synchronize_session=False)
    db.commit()
    return int(deleted or 0)
