from __future__ import annotations

from datetime import datetime

from sqlalchemy import and_, func, or_
from sqlalchemy.orm import Session

from affiliate_engine.models.enums import DeliveryStatusEnum, PostbackTriggerEnum
from affiliate_engine.models.webhook_logs import AffiliateWebhookLog, PostbackLog, PostbackTemplate


def _retryable(db: Session, model, *, max_attempts: int, attempted_before: datetime, limit: int):
    """
    Failed deliveries whose last attempt is old enough, plus pending rows that
    were never sent (the process died between logging and sending).
    Failed rows with no attempt are refusals and are never retried.
    """
    failed = and_(
        model.status == DeliveryStatusEnum.FAILED,
        model.last_attempt_at.isnot(None),
        model.last_attempt_at <= attempted_before,
    )
    stale_pending = and_(
        model.status == DeliveryStatusEnum.PENDING,
        model.created_at <= attempted_before,
    )
    return (
        db.query(model)
        .filter(model.attempts < max_attempts, or_(failed, stale_pending))
        .order_by(func.coalesce(model.last_attempt_at, model.created_at).asc(), model.id.asc())
        .limit(limit)
        .all()
    )


def create_webhook_log(
    db: Session,
    *,
    shop_id: str,
    commission_id: int,
    affiliate_id: int,
    webhook_url: str,
    request_params: dict | None,
    status: DeliveryStatusEnum = DeliveryStatusEnum.PENDING,
    error_message: str | None = None,
    attempts: int = 0,
    last_attempt_at: datetime | None = None,
) -> AffiliateWebhookLog:
    log = AffiliateWebhookLog(
        shop_id=shop_id,
        commission_id=commission_id,
        affiliate_id=affiliate_id,
        webhook_url=webhook_url,
        request_method="GET",
        request_params=request_params or {},
        status=status,
        error_message=error_message,
        attempts=attempts,
        last_attempt_at=last_attempt_at,
    )
    db.add(log)
    db.commit()
    db.refresh(log)
    return log


def list_webhook_logs_for_commission(db: Session, *, commission_id: int) -> list[AffiliateWebhookLog]:
    return (
        db.query(AffiliateWebhookLog)
        .filter(AffiliateWebhookLog.commission_id == commission_id)
        .order_by(AffiliateWebhookLog.id.asc())
        .all()
    )


def list_retryable_webhook_logs(
    db: Session,
    *,
    max_attempts: int,
    attempted_before: datetime,
    limit: int,
) -> list[AffiliateWebhookLog]:
    return _retryable(db, AffiliateWebhookLog, max_attempts=max_attempts, attempted_before=attempted_before, limit=limit)


def create_postback_template(
    db: Session,
    *,
    shop_id: str,
    name: str,
    base_url: str,
    param_mappings: dict[str, str],
    trigger_event: PostbackTriggerEnum = PostbackTriggerEnum.CONVERSION,
    active: bool = True,
) -> PostbackTemplate:
    template = PostbackTemplate(
        shop_id=shop_id,
        name=name,
        base_url=base_url,
        param_mappings=param_mappings,
        trigger_event=trigger_event,
        active=active,
    )
    db.add(template)
    db.commit()
    db.refresh(template)
    return template


def get_postback_template(db: Session, *, template_id: int) -> PostbackTemplate | None:
    return db.query(PostbackTemplate).filter(PostbackTemplate.id == template_id).first()


def list_active_templates(
    db: Session,
    *,
    shop_id: str,
    trigger_event: PostbackTriggerEnum,
) -> list[PostbackTemplate]:
    return (
        db.query(PostbackTemplate)
        .filter(
            PostbackTemplate.shop_id == shop_id,
            PostbackTemplate.trigger_event == trigger_event,
            PostbackTemplate.active.is_(True),
        )
        .order_by(PostbackTemplate.id.asc())
        .all()
    )


def create_postback_log(
    db: Session,
    *,
    shop_id: str,
    commission_id: int,
    template_id: int,
    url: str,
    request_params: dict | None,
) -> PostbackLog:
    log = PostbackLog(
        shop_id=shop_id,
        commission_id=commission_id,
        postback_template_id=template_id,
        url=url,
        request_params=request_params or {},
        status=DeliveryStatusEnum.PENDING,
        attempts=0,
    )
    db.add(log)
    db.commit()
    db.refresh(log)
    return log


def list_postback_logs_for_commission(db: Session, *, commission_id: int) -> list[PostbackLog]:
    return (
        db.query(PostbackLog)
        .filter(PostbackLog.commission_id == commission_id)
        .order_by(PostbackLog.id.asc())
        .all()
    )


def list_retryable_postback_logs(
    db: Session,
    *,
    max_attempts: int,
    attempted_before: datetime,
    limit: int,
) -> list[PostbackLog]:
    return _retryable(db, PostbackLog, max_attempts=max_attempts, attempted_before=attempted_before, limit=limit)
