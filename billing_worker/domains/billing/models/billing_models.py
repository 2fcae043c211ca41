"""
Billing domain data models
"""

from dataclasses import dataclass, asdict
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, Optional


@dataclass(frozen=True)
class AppliedDiscount:
    """Promotion that priced a subscription"""

    promotion_id: str
    code: str
    promotion_type: str
    discount_unit: str
    value: Decimal


@dataclass(frozen=True)
class DiscountMetrics:
    """Result of pricing a plan for a shop"""

    final_price: Decimal
    adjusted_amount: Decimal  # How much the promotion took off plan.price
    duration_limit_in_intervals: Optional[int]
    applied_plan_discount: Optional[AppliedDiscount]


@dataclass(frozen=True)
class CycleStatus:
    """Read-only view of where a subscription is in its billing cycle"""

    subscription_id: str
    status: str
    is_expired: bool
    is_cycle_transition: bool
    days_until_expiration: int
    current_cycle_start: datetime
    current_cycle_end: datetime
    next_cycle_start: datetime
    next_cycle_end: datetime

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        for key in ("current_cycle_start", "current_cycle_end", "next_cycle_start", "next_cycle_end"):
            data[key] = data[key].isoformat()
        return data


@dataclass(frozen=True)
class SubscribeResult:
    subscription_id: str
    charge_id: str
    confirmation_url: str
    price: Decimal


@dataclass(frozen=True)
class CreditPurchaseResult:
    purchase_id: str
    charge_id: str
    confirmation_url: str
    price: Decimal
    credit_applied: Decimal


@dataclass(frozen=True)
class ChargeCreation:
    """Billing provider answer to a create-charge call"""

    confirmation_url: str
    external_id: str


@dataclass(frozen=True)
class CancelledCharge:
    """Billing provider answer to a cancel-charge call"""

    status: str
    created_at: Optional[datetime]
    updated_at: Optional[datetime]
    price: Optional[Decimal]


@dataclass(frozen=True)
class BillingStatus:
    """What the billing page shows for a shop"""

    shop: str
    plan: str
    subscription_id: Optional[str]
    subscription_status: Optional[str]
    price: Optional[Decimal]
    currency_code: str
    cycle_start: Optional[datetime]
    cycle_end: Optional[datetime]
    days_until_expiration: Optional[int]
    billing_credit: Decimal
    usage: Dict[str, Any]

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        for key in ("cycle_start", "cycle_end"):
            if data[key] is not None:
                data[key] = data[key].isoformat()
        for key in ("price", "billing_credit"):
            if data[key] is not None:
                data[key] = str(data[key])
        return data
