"""
Custom exceptions for the billing worker
"""

from .base import BillingWorkerException
from .config import ConfigurationError
from .database import DatabaseError, ConcurrentUpdateError
from .billing import (
    BillingError,
    InvalidTransitionError,
    AlreadyTerminatedError,
    DuplicateChargeError,
    SubscriptionNotFoundError,
    PlanNotFoundError,
    PaymentNotFoundError,
    CreditPackageNotFoundError,
    ShopNotFoundError,
    BillingProviderError,
    ShopifyBillingApiError,
)
from .usage import RateLimitExceededError
from .webhook import WebhookPayloadError, WebhookProcessingError, QueueItemNotFoundError

__all__ = [
    "BillingWorkerException",
    "ConfigurationError",
    "DatabaseError",
    "ConcurrentUpdateError",
    "BillingError",
    "InvalidTransitionError",
    "AlreadyTerminatedError",
    "DuplicateChargeError",
    "SubscriptionNotFoundError",
    "PlanNotFoundError",
    "PaymentNotFoundError",
    "CreditPackageNotFoundError",
    "ShopNotFoundError",
    "BillingProviderError",
    "ShopifyBillingApiError",
    "RateLimitExceededError",
    "WebhookPayloadError",
    "WebhookProcessingError",
    "QueueItemNotFoundError",
]
