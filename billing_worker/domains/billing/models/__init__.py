from .billing_models import (
    AppliedDiscount,
    DiscountMetrics,
    CycleStatus,
    SubscribeResult,
    CreditPurchaseResult,
    ChargeCreation,
    CancelledCharge,
    BillingStatus,
)

__all__ = [
    "AppliedDiscount",
    "DiscountMetrics",
    "CycleStatus",
    "SubscribeResult",
    "CreditPurchaseResult",
    "ChargeCreation",
    "CancelledCharge",
    "BillingStatus",
]
