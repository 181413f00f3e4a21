from sqlalchemy import (
    Boolean,
    Column,
    DateTime,
    Enum,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
)

from affiliate_engine.core.db import Base
from affiliate_engine.models.enums import FraudFlagTypeEnum
from affiliate_engine.models.mixins import TimestampMixin


class FraudFlag(TimestampMixin, Base):
    __tablename__ = "fraud_flags"
    __table_args__ = (
        Index("ix_fraud_flags_commission", "commission_id"),
        Index("ix_fraud_flags_affiliate_resolved", "affiliate_id", "resolved"),
    )

    id = Column(Integer, primary_key=True, index=True)
    shop_id = Column(String, nullable=False)
    commission_id = Column(Integer, ForeignKey("commissions.id", ondelete="CASCADE"), nullable=False)
    affiliate_id = Column(Integer, ForeignKey("affiliates.id", ondelete="CASCADE"), nullable=False)
    flag_type = Column(
        Enum(
            FraudFlagTypeEnum,
            name="fraud_flag_type_enum",
            native_enum=False,
            validate_strings=True,
        ),
        nullable=False,
    )
    score = Column(Integer, nullable=False)
    reason = Column(Text, nullable=False)
    resolved = Column(Boolean, nullable=False, default=False)
    resolved_at = Column(DateTime, nullable=True)
    resolution_note = Column(Text, nullable=True)
