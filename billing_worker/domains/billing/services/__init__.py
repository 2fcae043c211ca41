"""
Billing Services Package
"""

from .shopify_billing_client import (
    BillingProviderClient,
    ShopifyBillingClient,
    charge_id_from_gid,
    get_shopify_billing_client,
)
from .payment_service import PaymentService
from .credit_service import CreditService
from .subscription_service import SubscriptionService

__all__ = [
    "BillingProviderClient",
    "ShopifyBillingClient",
    "charge_id_from_gid",
    "get_shopify_billing_client",
    "PaymentService",
    "CreditService",
    "SubscriptionService",
]
