"""
Plan and Promotion models for SQLAlchemy
"""

from sqlalchemy import (
    Column,
    String,
    Boolean,
    Integer,
    Numeric,
    ForeignKey,
    Enum as SQLEnum,
)

from .base import BaseModel, UTCDateTime
from .enums import PlanName, PlanInterval, PromotionType, DiscountUnit


class Plan(BaseModel):
    """
    Billing tier with price, interval and usage limits.

    A limit of 0 or NULL means unlimited. Existing subscriptions keep their
    own locked-in price, so editing a plan's price never changes them.
    """

    __tablename__ = "plans"

    name = Column(
        SQLEnum(PlanName, name="plan_name_enum"), unique=True, nullable=False
    )
    price = Column(Numeric(10, 2), nullable=False)
    currency_code = Column(String(10), nullable=False, default="USD")
    interval = Column(
        SQLEnum(PlanInterval, name="plan_interval_enum"),
        nullable=False,
        default=PlanInterval.EVERY_30_DAYS,
    )
    is_active = Column(Boolean, nullable=False, default=True)

    # ===== CYCLE QUOTAS =====
    ai_request_limit = Column(Integer, nullable=True)
    ai_token_limit = Column(Integer, nullable=True)
    crawl_request_limit = Column(Integer, nullable=True)

    # ===== RATE LIMITS =====
    ai_rpm = Column(Integer, nullable=True)
    ai_rpd = Column(Integer, nullable=True)
    ai_tpm = Column(Integer, nullable=True)
    ai_tpd = Column(Integer, nullable=True)
    crawl_rpm = Column(Integer, nullable=True)
    crawl_rpd = Column(Integer, nullable=True)

    @property
    def interval_days(self) -> int:
        return PlanInterval(self.interval).days

    @property
    def is_free(self) -> bool:
        return self.name == PlanName.FREE or not self.price

    def __repr__(self) -> str:
        return f"<Plan(name={self.name}, price={self.price}, interval={self.interval})>"


class Promotion(BaseModel):
    """Discount terms applied when a shop subscribes"""

    __tablename__ = "promotions"

    code = Column(String(100), unique=True, nullable=False)
    promotion_type = Column(
        SQLEnum(PromotionType, name="promotion_type_enum"), nullable=False
    )
    discount_unit = Column(
        SQLEnum(DiscountUnit, name="discount_unit_enum"),
        nullable=False,
        default=DiscountUnit.PERCENTAGE,
    )
    value = Column(Numeric(10, 2), nullable=False)

    # Restrict to one plan; NULL applies to every paid plan
    plan_id = Column(
        String, ForeignKey("plans.id", ondelete="CASCADE"), nullable=True, index=True
    )

    valid_from = Column(UTCDateTime(), nullable=True)
    valid_until = Column(UTCDateTime(), nullable=True)
    max_uses = Column(Integer, nullable=True)
    used_count = Column(Integer, nullable=False, default=0)
    is_active = Column(Boolean, nullable=False, default=True)

    def __repr__(self) -> str:
        return f"<Promotion(code={self.code}, type={self.promotion_type}, value={self.value})>"
