"""
Payment model for SQLAlchemy

Amounts are never edited after insert: a refund flips the original row to
REFUNDED and adds one compensating SUCCEEDED row with the negated amount.
"""

from sqlalchemy import Column, String, Numeric, ForeignKey, Enum as SQLEnum

from .base import BaseModel, ShopMixin, UTCDateTime
from .enums import PaymentStatus, BillingType


class Payment(BaseModel, ShopMixin):
    """Payment for a subscription cycle or a credit purchase"""

    __tablename__ = "payments"

    subscription_id = Column(
        String, ForeignKey("subscriptions.id"), nullable=True, index=True
    )
    credit_purchase_id = Column(
        String, ForeignKey("credit_purchases.id"), nullable=True, index=True
    )

    amount = Column(Numeric(10, 2), nullable=False)
    currency_code = Column(String(10), nullable=False, default="USD")
    status = Column(
        SQLEnum(PaymentStatus, name="payment_status_enum"),
        nullable=False,
        default=PaymentStatus.PENDING,
        index=True,
    )
    billing_type = Column(
        SQLEnum(BillingType, name="billing_type_enum"),
        nullable=False,
        default=BillingType.RECURRING,
    )

    billing_period_start = Column(UTCDateTime(), nullable=True)
    billing_period_end = Column(UTCDateTime(), nullable=True)

    transaction_id = Column(String(255), nullable=True, unique=True)

    # Set on compensating rows; unique so a payment is compensated at most once
    refund_of_id = Column(
        String, ForeignKey("payments.id"), nullable=True, unique=True
    )

    def __repr__(self) -> str:
        return f"<Payment(id={self.id}, amount={self.amount}, status={self.status})>"
