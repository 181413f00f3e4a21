from sqlalchemy import (
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
from affiliate_engine.models.enums import (
    AffiliateStatusEnum,
    CommissionTypeEnum,
    SellingSubscriptionsEnum,
)
from affiliate_engine.models.mixins import TimestampMixin


JSON_TYPE = JSONB().with_variant(JSON, "sqlite")


class Offer(TimestampMixin, Base):
    __tablename__ = "offers"
    __table_args__ = (
        UniqueConstraint("shop_id", "offer_number", name="uq_offers_shop_number"),
        Index("ix_offers_shop_id", "shop_id"),
    )

    id = Column(Integer, primary_key=True, index=True)
    shop_id = Column(String, nullable=False)
    offer_number = Column(Integer, nullable=False)
    name = Column(String, nullable=False)
    commission_type = Column(
        Enum(
            CommissionTypeEnum,
            name="offer_commission_type_enum",
            native_enum=False,
            validate_strings=True,
        ),
        nullable=False,
        default=CommissionTypeEnum.PERCENTAGE,
    )
    amount = Column(Numeric(10, 2), nullable=False, default=0)
    currency = Column(String, nullable=False, default="USD")
    attribution_window_days = Column(Integer, nullable=False, default=90)
    selling_subscriptions = Column(
        Enum(
            SellingSubscriptionsEnum,
            name="offer_selling_subscriptions_enum",
            native_enum=False,
            validate_strings=True,
        ),
        nullable=False,
        default=SellingSubscriptionsEnum.NO,
    )
    subscription_max_payments = Column(Integer, nullable=True)
    subscription_rebill_commission_type = Column(
        Enum(
            CommissionTypeEnum,
            name="offer_rebill_commission_type_enum",
            native_enum=False,
            validate_strings=True,
        ),
        nullable=True,
    )
    subscription_rebill_commission_value = Column(Numeric(10, 2), nullable=True)

    affiliates = relationship("Affiliate", back_populates="offer", lazy="selectin")


class Affiliate(TimestampMixin, Base):
    __tablename__ = "affiliates"
    __table_args__ = (
        UniqueConstraint("shop_id", "affiliate_number", name="uq_affiliates_shop_number"),
        Index("ix_affiliates_shop_status", "shop_id", "status"),
        Index("ix_affiliates_shop_email", "shop_id", "email"),
    )

    id = Column(Integer, primary_key=True, index=True)
    shop_id = Column(String, nullable=False)
    affiliate_number = Column(Integer, nullable=False)
    name = Column(String, nullable=False)
    email = Column(String, nullable=True)
    status = Column(
        Enum(
            AffiliateStatusEnum,
            name="affiliate_status_enum",
            native_enum=False,
            validate_strings=True,
        ),
        nullable=False,
        default=AffiliateStatusEnum.ACTIVE,
    )
    offer_id = Column(Integer, ForeignKey("offers.id", ondelete="SET NULL"), nullable=True)
    payout_terms_days = Column(Integer, nullable=False, default=30)
    webhook_url = Column(String, nullable=True)
    # placeholder -> {"type": "fixed"|"dynamic", "value": ...} or a legacy field key
    webhook_parameter_mapping = Column(JSON_TYPE, nullable=True)
    # Last postback parameters seen on a click; used for coupon attributions,
    # which have no click of their own.
    postback_transaction_id = Column(String, nullable=True)
    postback_affiliate_id = Column(String, nullable=True)
    postback_sub1 = Column(String, nullable=True)
    postback_sub2 = Column(String, nullable=True)
    postback_sub3 = Column(String, nullable=True)
    postback_sub4 = Column(String, nullable=True)

    offer = relationship("Offer", back_populates="affiliates", lazy="selectin")
    links = relationship("AffiliateLink", back_populates="affiliate", lazy="selectin")

    @property
    def is_active(self) -> bool:
        return self.status == AffiliateStatusEnum.ACTIVE


class AffiliateLink(TimestampMixin, Base):
    __tablename__ = "affiliate_links"
    __table_args__ = (
        Index("ix_affiliate_links_affiliate", "affiliate_id"),
        Index("ix_affiliate_links_shop_coupon", "shop_id", "coupon_code"),
    )

    id = Column(Integer, primary_key=True, index=True)
    shop_id = Column(String, nullable=False)
    affiliate_id = Column(Integer, ForeignKey("affiliates.id", ondelete="CASCADE"), nullable=False)
    name = Column(String, nullable=False)
    destination_url = Column(String, nullable=False)
    coupon_code = Column(String, nullable=True)

    affiliate = relationship("Affiliate", back_populates="links", lazy="selectin")
