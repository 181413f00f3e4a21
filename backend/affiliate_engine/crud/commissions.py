from __future__ import annotations

from sqlalchemy import func
from sqlalchemy.orm import Session

from affiliate_engine.models.commissions import Commission
from affiliate_engine.models.enums import CommissionStatusEnum


def get_commission(db: Session, *, commission_id: int) -> Commission | None:
    return db.query(Commission).filter(Commission.id == commission_id).first()


def get_active_commission_for_order(db: Session, *, shop_id: str, shopify_order_id: str) -> Commission | None:
    return (
        db.query(Commission)
        .filter(
            Commission.shop_id == shop_id,
            Commission.shopify_order_id == str(shopify_order_id),
            Commission.deleted_at.is_(None),
        )
        .first()
    )


def list_commissions_for_order(
    db: Session,
    *,
    shop_id: str,
    shopify_order_id: str,
    statuses: list[CommissionStatusEnum] | None = None,
) -> list[Commission]:
    query = db.query(Commission).filter(
        Commission.shop_id == shop_id,
        Commission.shopify_order_id == str(shopify_order_id),
    )
    if statuses:
        query = query.filter(Commission.status.in_(statuses))
    return query.order_by(Commission.id.asc()).all()


def list_commissions(db: Session, *, commission_ids: list[int]) -> list[Commission]:
    if not commission_ids:
        return []
    return db.query(Commission).filter(Commission.id.in_(commission_ids)).order_by(Commission.id.asc()).all()


def count_affiliate_commissions_by_status(db: Session, *, affiliate_id: int) -> dict[CommissionStatusEnum, int]:
    rows = (
        db.query(Commission.status, func.count(Commission.id))
        .filter(Commission.affiliate_id == affiliate_id, Commission.deleted_at.is_(None))
        .group_by(Commission.status)
        .all()
    )
    return {CommissionStatusEnum(status): int(count) for status, count in rows}
