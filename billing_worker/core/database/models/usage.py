"""
Usage ledger models for SQLAlchemy
"""

from sqlalchemy import (
    Column,
    Integer,
    Index,
    UniqueConstraint,
    Enum as SQLEnum,
)

from .base import BaseModel, ShopMixin, UTCDateTime
from .enums import UsageService


class UsageCounter(BaseModel, ShopMixin):
    """
    Cycle totals for one (shop, service).

    Every increment is a compare-and-swap on version; reset zeroes totals
    and the last-notified threshold together.
    """

    __tablename__ = "usage_counters"

    service = Column(SQLEnum(UsageService, name="usage_service_enum"), nullable=False)
    total_requests = Column(Integer, nullable=False, default=0)
    total_tokens = Column(Integer, nullable=False, default=0)
    cycle_start = Column(UTCDateTime(), nullable=True)
    last_notified_threshold = Column(Integer, nullable=False, default=0)
    version = Column(Integer, nullable=False, default=0)

    __table_args__ = (
        UniqueConstraint("shop_id", "service", name="uq_usage_counters_shop_service"),
    )


class UsageEvent(BaseModel, ShopMixin):
    """One recorded call, summed over the minute and day sliding windows"""

    __tablename__ = "usage_events"

    service = Column(SQLEnum(UsageService, name="usage_service_enum"), nullable=False)
    calls = Column(Integer, nullable=False, default=1)
    tokens = Column(Integer, nullable=False, default=0)
    occurred_at = Column(UTCDateTime(), nullable=False)

    __table_args__ = (
        Index("ix_usage_events_window", "shop_id", "service", "occurred_at"),
    )
