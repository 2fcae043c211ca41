"""
Shop model for SQLAlchemy

Represents a merchant installation of the app.
"""

from decimal import Decimal

from sqlalchemy import Column, String, Boolean, Numeric

from .base import BaseModel, UTCDateTime


class Shop(BaseModel):
    """Shop model representing a Shopify store installation"""

    __tablename__ = "shops"

    shop_domain = Column(String(255), unique=True, nullable=False, index=True)
    email = Column(String(255), nullable=True)
    currency_code = Column(String(10), nullable=False, default="USD")
    is_active = Column(Boolean, default=True, nullable=False, index=True)

    # Eligible for the early adopter promotion regardless of remaining slots
    is_early_adopter = Column(Boolean, default=False, nullable=False)

    # Proration credit from cancelled subscriptions, spent on credit packages
    billing_credit = Column(Numeric(10, 2), nullable=False, default=Decimal("0.00"))

    installed_at = Column(UTCDateTime(), nullable=True)
    uninstalled_at = Column(UTCDateTime(), nullable=True)

    def __repr__(self) -> str:
        return f"<Shop(domain={self.shop_domain}, active={self.is_active})>"
