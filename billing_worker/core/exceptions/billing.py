"""
Subscription, payment and billing provider exceptions
"""

from typing import Optional, Dict, Any

from .base import BillingWorkerException


class BillingError(BillingWorkerException):
    """Base exception for billing state errors"""


class InvalidTransitionError(BillingError):
    """Raised when a transition is not legal from the current status"""

    def __init__(
        self,
        message: str,
        entity_id: Optional[str] = None,
        current_status: Optional[str] = None,
        target_status: Optional[str] = None,
    ):
        super().__init__(
            message,
            "INVALID_TRANSITION",
            {
                "entity_id": entity_id,
                "current_status": current_status,
                "target_status": target_status,
            },
        )
        self.entity_id = entity_id
        self.current_status = current_status
        self.target_status = target_status


class AlreadyTerminatedError(BillingError):
    """Raised when cancelling a subscription that already reached a terminal status"""

    def __init__(self, subscription_id: str, status: str):
        super().__init__(
            f"Subscription {subscription_id} is already {status}",
            "ALREADY_TERMINATED",
            {"subscription_id": subscription_id, "status": status},
        )
        self.subscription_id = subscription_id
        self.status = status


class DuplicateChargeError(BillingError):
    """Raised when a charge id is already referenced by a subscription or purchase"""

    def __init__(self, charge_id: str, cause: Optional[Exception] = None):
        super().__init__(
            f"Charge {charge_id} is already registered",
            "DUPLICATE_CHARGE",
            {"charge_id": charge_id},
            cause,
        )
        self.charge_id = charge_id


class SubscriptionNotFoundError(BillingError):
    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message, "SUBSCRIPTION_NOT_FOUND", details)


class PlanNotFoundError(BillingError):
    def __init__(self, plan_name: str):
        super().__init__(
            f"Plan {plan_name} does not exist", "PLAN_NOT_FOUND", {"plan": plan_name}
        )


class PaymentNotFoundError(BillingError):
    def __init__(self, payment_id: str):
        super().__init__(
            f"Payment {payment_id} does not exist",
            "PAYMENT_NOT_FOUND",
            {"payment_id": payment_id},
        )


class CreditPackageNotFoundError(BillingError):
    def __init__(self, package_name: str):
        super().__init__(
            f"Credit package {package_name} does not exist",
            "CREDIT_PACKAGE_NOT_FOUND",
            {"package": package_name},
        )


class ShopNotFoundError(BillingError):
    def __init__(self, shop_domain: str):
        super().__init__(
            f"Shop {shop_domain} is not installed",
            "SHOP_NOT_FOUND",
            {"shop": shop_domain},
        )


class BillingProviderError(BillingWorkerException):
    """Raised when a call to the billing provider fails"""

    def __init__(
        self,
        message: str,
        operation: str = "unknown",
        details: Optional[Dict[str, Any]] = None,
        cause: Optional[Exception] = None,
    ):
        super().__init__(message, "BILLING_PROVIDER_ERROR", details, cause)
        self.operation = operation

    def to_dict(self) -> Dict[str, Any]:
        base_dict = super().to_dict()
        base_dict["operation"] = self.operation
        return base_dict


class ShopifyBillingApiError(BillingWorkerException):
    """Raised by the Shopify billing client for HTTP or GraphQL user errors"""

    def __init__(
        self,
        message: str,
        status_code: Optional[int] = None,
        user_errors: Optional[list] = None,
        cause: Optional[Exception] = None,
    ):
        super().__init__(
            message,
            "SHOPIFY_API_ERROR",
            {"status_code": status_code, "user_errors": user_errors or []},
            cause,
        )
        self.status_code = status_code
        self.user_errors = user_errors or []
