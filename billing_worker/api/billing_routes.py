"""
Billing API

Status reads, the charge confirmation callback, plan changes and credit
purchases for the embedded app.
"""

from datetime import datetime
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel

from billing_worker.core.database.models import Payment, Subscription, UsageService
from billing_worker.core.logging import get_logger
from .dependencies import ServiceContainer, get_container, verify_cron_secret

router = APIRouter(prefix="/api/billing", tags=["billing"])
logger = get_logger(__name__)


# Request/Response Models
class SubscribeRequest(BaseModel):
    plan_name: str
    return_url: str


class CancelRequest(BaseModel):
    reason: str = "merchant_request"
    prorate: bool = False


class CreditPurchaseRequest(BaseModel):
    package_name: str
    return_url: str


class SubscriptionResponse(BaseModel):
    id: str
    status: str
    plan: str
    charge_id: str
    price: str
    currency_code: str
    cycle_start: Optional[datetime] = None
    cycle_end: Optional[datetime] = None
    cancelled_at: Optional[datetime] = None
    cancel_reason: Optional[str] = None
    proration_credit: Optional[str] = None

    @classmethod
    def from_model(cls, subscription: Subscription) -> "SubscriptionResponse":
        return cls(
            id=subscription.id,
            status=subscription.status.value,
            plan=subscription.plan.name.value,
            charge_id=subscription.shopify_subscription_id,
            price=str(subscription.price),
            currency_code=subscription.currency_code,
            cycle_start=subscription.cycle_start,
            cycle_end=subscription.cycle_end,
            cancelled_at=subscription.cancelled_at,
            cancel_reason=subscription.cancel_reason,
            proration_credit=(
                str(subscription.proration_credit)
                if subscription.proration_credit is not None
                else None
            ),
        )


class PaymentResponse(BaseModel):
    id: str
    amount: str
    currency_code: str
    status: str
    billing_type: str
    transaction_id: Optional[str] = None
    refund_of_id: Optional[str] = None
    created_at: Optional[datetime] = None

    @classmethod
    def from_model(cls, payment: Payment) -> "PaymentResponse":
        return cls(
            id=payment.id,
            amount=str(payment.amount),
            currency_code=payment.currency_code,
            status=payment.status.value,
            billing_type=payment.billing_type.value,
            transaction_id=payment.transaction_id,
            refund_of_id=payment.refund_of_id,
            created_at=payment.created_at,
        )


class ChargeResponse(BaseModel):
    id: str
    charge_id: str
    confirmation_url: str
    price: str
    credit_applied: Optional[str] = None


# API Endpoints
@router.get("/callback", response_model=SubscriptionResponse)
async def confirm_charge(
    charge_id: str = Query(...),
    container: ServiceContainer = Depends(get_container),
):
    """
    Shopify redirects the merchant here after approving a subscription charge
    """
    subscription = await container.subscriptions.confirm(charge_id)
    return SubscriptionResponse.from_model(subscription)


@router.get("/{shop}/status")
async def get_billing_status(
    shop: str, container: ServiceContainer = Depends(get_container)
) -> Dict[str, Any]:
    return await container.subscriptions.get_billing_status(shop)


@router.get("/{shop}/event")
async def get_billing_event(
    shop: str,
    plan_name: str = Query(...),
    canceled: bool = False,
    container: ServiceContainer = Depends(get_container),
):
    """Which billing action the client should take next"""
    event = await container.subscriptions.check_subscription_status(
        plan_name, shop, canceled=canceled
    )
    return {"shop": shop, "event": event.value}


@router.get("/{shop}/cycle")
async def get_cycle_status(shop: str, container: ServiceContainer = Depends(get_container)):
    cycle = await container.subscriptions.check_and_manage_cycle(shop)
    return cycle.to_dict()


@router.get("/{shop}/usage/{service}")
async def get_usage(
    shop: str, service: UsageService, container: ServiceContainer = Depends(get_container)
):
    state = await container.usage_ledger.get_usage_state(shop, service)
    return state.to_dict()


@router.post("/{shop}/subscribe", response_model=ChargeResponse)
async def subscribe(
    shop: str,
    request: SubscribeRequest,
    container: ServiceContainer = Depends(get_container),
):
    result = await container.subscriptions.subscribe(shop, request.plan_name, request.return_url)
    return ChargeResponse(
        id=result.subscription_id,
        charge_id=result.charge_id,
        confirmation_url=result.confirmation_url,
        price=str(result.price),
    )


@router.post("/{shop}/cancel", response_model=SubscriptionResponse)
async def cancel_subscription(
    shop: str,
    request: CancelRequest,
    container: ServiceContainer = Depends(get_container),
):
    subscription = await container.subscriptions.cancel_current(
        shop, request.reason, prorate=request.prorate
    )
    logger.info("Subscription cancelled via API", shop=shop, subscription_id=subscription.id)
    return SubscriptionResponse.from_model(subscription)


@router.post("/{shop}/credits", response_model=ChargeResponse)
async def purchase_credits(
    shop: str,
    request: CreditPurchaseRequest,
    container: ServiceContainer = Depends(get_container),
):
    result = await container.credits.purchase(shop, request.package_name, request.return_url)
    return ChargeResponse(
        id=result.purchase_id,
        charge_id=result.charge_id,
        confirmation_url=result.confirmation_url,
        price=str(result.price),
        credit_applied=str(result.credit_applied),
    )


@router.get("/{shop}/payments", response_model=List[PaymentResponse])
async def list_payments(shop: str, container: ServiceContainer = Depends(get_container)):
    payments = await container.payments.list_payments(shop)
    return [PaymentResponse.from_model(payment) for payment in payments]


@router.post("/payments/{payment_id}/refund", response_model=List[PaymentResponse])
async def refund_payment(
    payment_id: str,
    container: ServiceContainer = Depends(get_container),
    authorized: bool = Depends(verify_cron_secret),
):
    """Refund by compensation (operator only)"""
    original, compensation = await container.payments.refund(payment_id)
    return [PaymentResponse.from_model(original), PaymentResponse.from_model(compensation)]
