from sqlalchemy import (
    Boolean,
    Column,
    DateTime,
    Enum,
    ForeignKey,
    Index,
    Integer,
    JSON,
    String,
    Text,
)
from sqlalchemy.dialects.postgresql import JSONB

from affiliate_engine.core.db import Base
from affiliate_engine.models.enums import DeliveryStatusEnum, PostbackTriggerEnum
from affiliate_engine.models.mixins import TimestampMixin


JSON_TYPE = JSONB().with_variant(JSON, "sqlite")


def _delivery_status_column():
    return Column(
        Enum(
            DeliveryStatusEnum,
            name="delivery_status_enum",
            native_enum=False,
            validate_strings=True,
        ),
        nullable=False,
        default=DeliveryStatusEnum.PENDING,
    )


class AffiliateWebhookLog(TimestampMixin, Base):
    __tablename__ = "affiliate_webhook_logs"
    __table_args__ = (
        Index("ix_affiliate_webhook_logs_status_attempt", "status", "last_attempt_at"),
        Index("ix_affiliate_webhook_logs_commission", "commission_id"),
    )

    id = Column(Integer, primary_key=True, index=True)
    shop_id = Column(String, nullable=False)
    commission_id = Column(Integer, ForeignKey("commissions.id", ondelete="CASCADE"), nullable=False)
    affiliate_id = Column(Integer, ForeignKey("affiliates.id", ondelete="CASCADE"), nullable=False)
    webhook_url = Column(Text, nullable=False)
    request_method = Column(String, nullable=False, default="GET")
    request_params = Column(JSON_TYPE, nullable=True)
    status = _delivery_status_column()
    response_code = Column(Integer, nullable=True)
    response_body = Column(Text, nullable=True)
    error_message = Column(Text, nullable=True)
    attempts = Column(Integer, nullable=False, default=0)
    last_attempt_at = Column(DateTime, nullable=True)


class PostbackTemplate(TimestampMixin, Base):
    __tablename__ = "postback_templates"
    __table_args__ = (
        Index("ix_postback_templates_shop_trigger", "shop_id", "trigger_event", "active"),
    )

    id = Column(Integer, primary_key=True, index=True)
    shop_id = Column(String, nullable=False)
    name = Column(String, nullable=False)
    base_url = Column(Text, nullable=False)
    # source field -> query parameter name
    param_mappings = Column(JSON_TYPE, nullable=False)
    trigger_event = Column(
        Enum(
            PostbackTriggerEnum,
            name="postback_trigger_enum",
            native_enum=False,
            validate_strings=True,
        ),
        nullable=False,
        default=PostbackTriggerEnum.CONVERSION,
    )
    active = Column(Boolean, nullable=False, default=True)


class PostbackLog(TimestampMixin, Base):
    __tablename__ = "postback_logs"
    __table_args__ = (
        Index("ix_postback_logs_status_attempt", "status", "last_attempt_at"),
        Index("ix_postback_logs_commission", "commission_id"),
    )

    id = Column(Integer, primary_key=True, index=True)
    shop_id = Column(String, nullable=False)
    commission_id = Column(Integer, ForeignKey("commissions.id", ondelete="CASCADE"), nullable=False)
    postback_template_id = Column(
        Integer,
        ForeignKey("postback_templates.id", ondelete="CASCADE"),
        nullable=False,
    )
    url = Column(Text, nullable=False)
    request_params = Column(JSON_TYPE, nullable=True)
    status = _delivery_status_column()
    response_code = Column(Integer, nullable=True)
    response_body = Column(Text, nullable=True)
    error_message = Column(Text, nullable=True)
    attempts = Column(Integer, nullable=False, default=0)
    last_attempt_at = Column(DateTime, nullable=True)
