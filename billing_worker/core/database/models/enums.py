"""
Enum models for SQLAlchemy

Defines all database enums used in the billing worker.
"""

from enum import Enum


class PlanName(str, Enum):
    """Billing tiers"""

    FREE = "FREE"
    STANDARD = "STANDARD"
    PRO = "PRO"
    ULTIMATE = "ULTIMATE"


class PlanInterval(str, Enum):
    """Recurring charge intervals"""

    EVERY_30_DAYS = "EVERY_30_DAYS"
    ANNUAL = "ANNUAL"

    @property
    def days(self) -> int:
        return 365 if self is PlanInterval.ANNUAL else 30


class SubscriptionStatus(str, Enum):
    """Local subscription status, mirrors Shopify AppSubscriptionStatus"""

    PENDING = "PENDING"  # Charge created, merchant has not approved yet
    ACTIVE = "ACTIVE"
    FROZEN = "FROZEN"  # Store frozen or paused by Shopify
    CANCELLED = "CANCELLED"
    DECLINED = "DECLINED"
    EXPIRED = "EXPIRED"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_SUBSCRIPTION_STATUSES


TERMINAL_SUBSCRIPTION_STATUSES = frozenset(
    {SubscriptionStatus.CANCELLED, SubscriptionStatus.DECLINED, SubscriptionStatus.EXPIRED}
)


class PaymentStatus(str, Enum):
    """Payment status"""

    PENDING = "PENDING"
    SUCCEEDED = "SUCCEEDED"
    FAILED = "FAILED"
    REFUNDED = "REFUNDED"


class BillingType(str, Enum):
    """What a payment pays for"""

    RECURRING = "RECURRING"
    ONE_TIME = "ONE_TIME"


class CreditPurchaseStatus(str, Enum):
    """Credit package purchase status"""

    PENDING = "PENDING"
    ACTIVE = "ACTIVE"
    DECLINED = "DECLINED"
    CANCELLED = "CANCELLED"
    EXPIRED = "EXPIRED"


class PromotionType(str, Enum):
    EARLY_ADOPTER = "EARLY_ADOPTER"
    PLAN_DISCOUNT = "PLAN_DISCOUNT"


class DiscountUnit(str, Enum):
    PERCENTAGE = "PERCENTAGE"
    FIXED = "FIXED"


class BillingEvent(str, Enum):
    """Next billing action the client should take"""

    SUBSCRIBE = "SUBSCRIBE"
    UPDATE = "UPDATE"
    RENEW = "RENEW"
    CANCEL = "CANCEL"


class UsageService(str, Enum):
    """Metered external services"""

    AI_API = "AI_API"
    CRAWL_API = "CRAWL_API"


class WebhookTopic(str, Enum):
    """Queue topics handled by the worker"""

    APP_UNINSTALLED = "APP_UNINSTALLED"
    APP_SUBSCRIPTIONS_UPDATE = "APP_SUBSCRIPTIONS_UPDATE"
    APP_PURCHASES_ONE_TIME_UPDATE = "APP_PURCHASES_ONE_TIME_UPDATE"
    APP_SUBSCRIPTIONS_APPROACHING_CAPPED_AMOUNT = "APP_SUBSCRIPTIONS_APPROACHING_CAPPED_AMOUNT"


class WebhookQueueStatus(str, Enum):
    """Webhook queue item status"""

    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"  # Terminal
    FAILED = "failed"  # Terminal, kept for manual replay


class WebhookLogOutcome(str, Enum):
    COMPLETED = "COMPLETED"
    RETRY = "RETRY"
    FAILED = "FAILED"
