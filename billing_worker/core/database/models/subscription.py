"""
Subscription model for SQLAlchemy

Multiple subscription records per shop, at most one ACTIVE. Rows are never
deleted; terminal statuses stay for audit.
"""

from decimal import Decimal

from sqlalchemy import (
    Column,
    String,
    Numeric,
    Text,
    ForeignKey,
    Index,
    Enum as SQLEnum,
    text,
)
from sqlalchemy.orm import relationship

from .base import BaseModel, ShopMixin, UTCDateTime
from .enums import SubscriptionStatus


class Subscription(BaseModel, ShopMixin):
    """Recurring app subscription backed by a Shopify charge"""

    __tablename__ = "subscriptions"

    # ===== STATUS =====
    status = Column(
        SQLEnum(SubscriptionStatus, name="subscription_status_enum"),
        nullable=False,
        default=SubscriptionStatus.PENDING,
        index=True,
    )

    plan_id = Column(
        String, ForeignKey("plans.id", ondelete="RESTRICT"), nullable=False, index=True
    )

    # ===== SHOPIFY =====
    shopify_subscription_id = Column(String(255), nullable=False, unique=True)
    confirmation_url = Column(Text, nullable=True)

    # ===== PRICING (locked in at create) =====
    price = Column(Numeric(10, 2), nullable=False)
    currency_code = Column(String(10), nullable=False, default="USD")
    applied_promotion_id = Column(
        String, ForeignKey("promotions.id", ondelete="SET NULL"), nullable=True
    )
    applied_discount = Column(Numeric(10, 2), nullable=False, default=Decimal("0.00"))

    # ===== CYCLE =====
    cycle_start = Column(UTCDateTime(), nullable=True)
    cycle_end = Column(UTCDateTime(), nullable=True, index=True)

    # ===== LIFECYCLE =====
    confirmed_at = Column(UTCDateTime(), nullable=True)
    cancelled_at = Column(UTCDateTime(), nullable=True)
    cancel_reason = Column(String(255), nullable=True)
    proration_credit = Column(Numeric(10, 2), nullable=True)

    plan = relationship("Plan", lazy="joined")

    __table_args__ = (
        Index(
            "uq_subscriptions_one_active_per_shop",
            "shop_id",
            unique=True,
            postgresql_where=text("status = 'ACTIVE'"),
            sqlite_where=text("status = 'ACTIVE'"),
        ),
    )

    def __repr__(self) -> str:
        return (
            f"<Subscription(id={self.id}, shop_id={self.shop_id}, "
            f"status={self.status}, charge={self.shopify_subscription_id})>"
        )
