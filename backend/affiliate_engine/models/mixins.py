from sqlalchemy import Column, DateTime

from affiliate_engine.core.time import utcnow


class TimestampMixin:
    """created_at / updated_at in naive UTC.

    created_at is assignable so backfills and tests can place rows in time.
    """

    created_at = Column(DateTime, default=utcnow, nullable=False, index=True)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)
