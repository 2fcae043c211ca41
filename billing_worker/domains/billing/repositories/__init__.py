from .billing_repository import BillingRepository

__all__ = ["BillingRepository"]
