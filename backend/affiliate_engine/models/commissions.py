from sqlalchemy import (
    Column,
    DateTime,
    Enum,
    ForeignKey,
    Index,
    Integer,
    JSON,
    Numeric,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import relationship

from affiliate_engine.core.db import Base
from affiliate_engine.models.enums import CommissionStatusEnum
from affiliate_engine.models.mixins import TimestampMixin


JSON_TYPE = JSONB().with_variant(JSON, "sqlite")


class Commission(TimestampMixin, Base):
    __tablename__ = "commissions"
    __table_args__ = (
        UniqueConstraint("shopify_order_id", "shop_id", name="uq_commissions_order_shop"),
        Index("ix_commissions_affiliate_status", "affiliate_id", "status"),
        Index("ix_commissions_shop_status", "shop_id", "status"),
    )

    id = Column(Integer, primary_key=True, index=True)
    shop_id = Column(String, nullable=False)
    affiliate_id = Column(Integer, ForeignKey("affiliates.id", ondelete="RESTRICT"), nullable=False)
    order_attribution_id = Column(
        Integer,
        ForeignKey("order_attributions.id", ondelete="RESTRICT"),
        nullable=False,
    )
    shopify_order_id = Column(String, nullable=False)
    amount = Column(Numeric(10, 2), nullable=False)
    currency = Column(String, nullable=False, default="USD")
    status = Column(
        Enum(
            CommissionStatusEnum,
            name="commission_status_enum",
            native_enum=False,
            validate_strings=True,
        ),
        nullable=False,
        default=CommissionStatusEnum.PENDING,
    )
    eligible_date = Column(DateTime, nullable=False)
    rule_snapshot = Column(JSON_TYPE, nullable=False)
    reversal_reason = Column(Text, nullable=True)
    deleted_at = Column(DateTime, nullable=True)

    affiliate = relationship("Affiliate", lazy="selectin")
    order_attribution = relationship("OrderAttribution", lazy="selectin")
