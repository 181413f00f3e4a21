from sqlalchemy import Column, Enum, Index, Integer, String, UniqueConstraint

from affiliate_engine.core.db import Base
from affiliate_engine.models.enums import SequenceNameEnum
from affiliate_engine.models.mixins import TimestampMixin


class ShopSequence(TimestampMixin, Base):
    __tablename__ = "shop_sequences"
    __table_args__ = (
        UniqueConstraint("shop_id", "name", name="uq_shop_sequences_shop_name"),
        Index("ix_shop_sequences_shop_id", "shop_id"),
    )

    id = Column(Integer, primary_key=True, index=True)
    shop_id = Column(String, nullable=False)
    name = Column(
        Enum(
            SequenceNameEnum,
            name="shop_sequence_name_enum",
            native_enum=False,
            validate_strings=True,
        ),
        nullable=False,
    )
    last_value = Column(Integer, nullable=False)
