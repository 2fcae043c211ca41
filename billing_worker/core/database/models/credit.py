"""
Credit package models for SQLAlchemy

One-time top-ups that extend a shop's cycle request quota.
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

from .base import BaseModel, ShopMixin
from .enums import CreditPurchaseStatus


class CreditPackage(BaseModel):
    """Purchasable bundle of extra requests"""

    __tablename__ = "credit_packages"

    name = Column(String(100), unique=True, nullable=False)
    price = Column(Numeric(10, 2), nullable=False)
    currency_code = Column(String(10), nullable=False, default="USD")
    ai_requests = Column(Integer, nullable=False, default=0)
    crawl_requests = Column(Integer, nullable=False, default=0)
    is_active = Column(Boolean, nullable=False, default=True)


class CreditPurchase(BaseModel, ShopMixin):
    """A shop's purchase of a credit package"""

    __tablename__ = "credit_purchases"

    package_id = Column(
        String, ForeignKey("credit_packages.id", ondelete="RESTRICT"), nullable=False
    )
    shopify_charge_id = Column(String(255), nullable=False, unique=True)
    status = Column(
        SQLEnum(CreditPurchaseStatus, name="credit_purchase_status_enum"),
        nullable=False,
        default=CreditPurchaseStatus.PENDING,
        index=True,
    )
    price = Column(Numeric(10, 2), nullable=False)
    # Portion of the shop's billing credit applied to this purchase
    credit_applied = Column(Numeric(10, 2), nullable=False, default=0)

    # Copied from the package so later package edits don't change what was bought
    ai_requests = Column(Integer, nullable=False, default=0)
    crawl_requests = Column(Integer, nullable=False, default=0)

    def __repr__(self) -> str:
        return f"<CreditPurchase(id={self.id}, charge={self.shopify_charge_id}, status={self.status})>"
