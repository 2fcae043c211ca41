"""
SQLAlchemy models for the billing worker
"""

from .base import Base, BaseModel, UTCDateTime
from .enums import (
    PlanName,
    PlanInterval,
    SubscriptionStatus,
    TERMINAL_SUBSCRIPTION_STATUSES,
    PaymentStatus,
    BillingType,
    CreditPurchaseStatus,
    PromotionType,
    DiscountUnit,
    BillingEvent,
    UsageService,
    WebhookTopic,
    WebhookQueueStatus,
    WebhookLogOutcome,
)
from .shop import Shop
from .session import ShopifySession
from .plan import Plan, Promotion
from .subscription import Subscription
from .credit import CreditPackage, CreditPurchase
from .payment import Payment
from .webhook_queue import WebhookQueueItem, WebhookLog
from .usage import UsageCounter, UsageEvent

__all__ = [
    "Base",
    "BaseModel",
    "UTCDateTime",
    "PlanName",
    "PlanInterval",
    "SubscriptionStatus",
    "TERMINAL_SUBSCRIPTION_STATUSES",
    "PaymentStatus",
    "BillingType",
    "CreditPurchaseStatus",
    "PromotionType",
    "DiscountUnit",
    "BillingEvent",
    "UsageService",
    "WebhookTopic",
    "WebhookQueueStatus",
    "WebhookLogOutcome",
    "Shop",
    "ShopifySession",
    "Plan",
    "Promotion",
    "Subscription",
    "CreditPackage",
    "CreditPurchase",
    "Payment",
    "WebhookQueueItem",
    "WebhookLog",
    "UsageCounter",
    "UsageEvent",
]
