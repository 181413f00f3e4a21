from sqlalchemy import (
    Column,
    ForeignKey,
    Index,
    Integer,
    JSON,
    String,
    Text,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import relationship

from affiliate_engine.core.db import Base
from affiliate_engine.models.mixins import TimestampMixin


JSON_TYPE = JSONB().with_variant(JSON, "sqlite")


class Click(TimestampMixin, Base):
    __tablename__ = "clicks"
    __table_args__ = (
        Index("ix_clicks_dedupe", "shop_id", "affiliate_id", "ip_hash", "user_agent_hash", "created_at"),
        Index("ix_clicks_fingerprint", "shop_id", "ip_hash", "user_agent_hash", "created_at"),
        Index("ix_clicks_affiliate_created", "affiliate_id", "created_at"),
    )

    # 32 hex chars, generated by the click store.
    id = Column(String(32), primary_key=True)
    shop_id = Column(String, nullable=False)
    affiliate_id = Column(Integer, ForeignKey("affiliates.id", ondelete="CASCADE"), nullable=False)
    link_id = Column(Integer, ForeignKey("affiliate_links.id", ondelete="SET NULL"), nullable=True)
    landing_url = Column(Text, nullable=False)
    referrer = Column(Text, nullable=True)
    ip_hash = Column(String(64), nullable=False)
    user_agent_hash = Column(String(64), nullable=False)
    url_transaction_id = Column(String, nullable=True)
    url_affiliate_id = Column(String, nullable=True)
    url_sub1 = Column(String, nullable=True)
    url_sub2 = Column(String, nullable=True)
    url_sub3 = Column(String, nullable=True)
    url_sub4 = Column(String, nullable=True)
    url_params = Column(JSON_TYPE, nullable=True)

    affiliate = relationship("Affiliate", lazy="selectin")
