from __future__ import annotations

from sqlalchemy.orm import Session

from affiliate_engine.models.enums import FraudFlagTypeEnum
from affiliate_engine.models.fraud_flags import FraudFlag


def create_fraud_flag(
    db: Session,
    *,
    shop_id: str,
    commission_id: int,
    affiliate_id: int,
    flag_type: FraudFlagTypeEnum,
    score: int,
    reason: str,
) -> FraudFlag:
    flag = FraudFlag(
        shop_id=shop_id,
        commission_id=commission_id,
        affiliate_id=affiliate_id,
        flag_type=flag_type,
        score=score,
        reason=reason,
        resolved=False,
    )
    db.add(flag)
    db.flush()
    return flag


def get_fraud_flag(db: Session, *, flag_id: int) -> FraudFlag | None:
    return db.query(FraudFlag).filter(FraudFlag.id == flag_id).first()


def list_flags_for_commission(db: Session, *, commission_id: int, unresolved_only: bool = False) -> list[FraudFlag]:
    query = db.query(FraudFlag).filter(FraudFlag.commission_id == commission_id)
    if unresolved_only:
        query = query.filter(FraudFlag.resolved.is_(False))
    return query.order_by(FraudFlag.id.asc()).all()
