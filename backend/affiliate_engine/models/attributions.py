from sqlalchemy import (
    Boolean,
    Column,
    Enum,
    ForeignKey,
    Index,
    Integer,
    JSON,
    Numeric,
    String,
    UniqueConstraint,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import relationship

from affiliate_engine.core.db import Base
from affiliate_engine.models.enums import AttributionTypeEnum
from affiliate_engine.models.mixins import TimestampMixin


JSON_TYPE = JSONB().with_variant(JSON, "sqlite")


class OrderAttribution(TimestampMixin, Base):
    __tablename__ = "order_attributions"
    __table_args__ = (
        UniqueConstraint("shopify_order_id", name="uq_order_attributions_order"),
        Index("ix_order_attributions_shop_affiliate", "shop_id", "affiliate_id"),
        Index("ix_order_attributions_click", "click_id"),
    )

    id = Column(Integer, primary_key=True, index=True)
    shop_id = Column(String, nullable=False)
    shopify_order_id = Column(String, nullable=False)
    shopify_order_number = Column(String, nullable=False)
    affiliate_id = Column(Integer, ForeignKey("affiliates.id", ondelete="SET NULL"), nullable=True)
    click_id = Column(String(32), ForeignKey("clicks.id", ondelete="SET NULL"), nullable=True)
    attribution_type = Column(
        Enum(
            AttributionTypeEnum,
            name="attribution_type_enum",
            native_enum=False,
            validate_strings=True,
        ),
        nullable=False,
    )
    attribution_method = Column(String, nullable=True)
    customer_email = Column(String, nullable=True)
    customer_name = Column(String, nullable=True)
    order_total = Column(Numeric(12, 2), nullable=False, default=0)
    order_currency = Column(String, nullable=False, default="USD")
    landing_url_params = Column(JSON_TYPE, nullable=True)

    affiliate = relationship("Affiliate", lazy="selectin")
    click = relationship("Click", lazy="selectin")


class SubscriptionAttribution(TimestampMixin, Base):
    __tablename__ = "subscription_attributions"
    __table_args__ = (
        UniqueConstraint(
            "original_order_id",
            "selling_plan_id",
            name="uq_subscription_attributions_order_plan",
        ),
        Index(
            "ix_subscription_attributions_affiliate_plan",
            "shop_id",
            "affiliate_id",
            "selling_plan_id",
            "active",
        ),
    )

    id = Column(Integer, primary_key=True, index=True)
    shop_id = Column(String, nullable=False)
    original_order_id = Column(String, nullable=False)
    affiliate_id = Column(Integer, ForeignKey("affiliates.id", ondelete="CASCADE"), nullable=False)
    selling_plan_id = Column(String, nullable=False)
    interval_months = Column(Integer, nullable=False, default=1)
    max_payments = Column(Integer, nullable=True)
    payments_made = Column(Integer, nullable=False, default=0)
    active = Column(Boolean, nullable=False, default=True)
