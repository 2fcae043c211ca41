from datetime import datetime
from typing import Annotated, Any, Dict, Literal, Optional, Union

from pydantic import BaseModel, Field, TypeAdapter, validator

from billing_worker.core.database.models import SubscriptionStatus, WebhookTopic


def _charge_id(gid: str) -> str:
    # gid://shopify/AppSubscription/123 -> 123
    return str(gid).rstrip("/").split("/")[-1]


# Deprecated Shopify statuses folded into the current ones
LEGACY_SUBSCRIPTION_STATUSES = {"ACCEPTED": "PENDING"}


def _timestamp_key(value: Optional[datetime]) -> str:
    return value.isoformat() if value is not None else ""


class AppSubscription(BaseModel):
    admin_graphql_api_id: str
    name: Optional[str] = None
    status: SubscriptionStatus
    admin_graphql_api_shop_id: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    currency: Optional[str] = None
    capped_amount: Optional[str] = None

    class Config:
        extra = "allow"

    @validator("status", pre=True)
    def normalize_status(cls, v):
        if not isinstance(v, str):
            return v
        status = v.upper()
        return LEGACY_SUBSCRIPTION_STATUSES.get(status, status)

    @property
    def charge_id(self) -> str:
        return _charge_id(self.admin_graphql_api_id)


class AppPurchaseOneTime(BaseModel):
    admin_graphql_api_id: str
    name: Optional[str] = None
    status: str
    admin_graphql_api_shop_id: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    class Config:
        extra = "allow"

    @validator("status", pre=True)
    def normalize_status(cls, v):
        if not isinstance(v, str) or not v:
            raise ValueError("status must be a non-empty string")
        return v.upper()

    @property
    def charge_id(self) -> str:
        return _charge_id(self.admin_graphql_api_id)


class CappedAmountSubscription(BaseModel):
    admin_graphql_api_id: str
    name: Optional[str] = None
    balance_used: float
    capped_amount: float
    currency_code: Optional[str] = None
    admin_graphql_api_shop_id: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    class Config:
        extra = "allow"

    @property
    def charge_id(self) -> str:
        return _charge_id(self.admin_graphql_api_id)


# Payload bodies as Shopify sends them


class AppSubscriptionUpdatePayload(BaseModel):
    app_subscription: AppSubscription

    class Config:
        extra = "allow"

    def idempotency_key(self) -> str:
        sub = self.app_subscription
        return f"{sub.charge_id}:{sub.status.value}:{_timestamp_key(sub.updated_at)}"


class AppUninstalledPayload(BaseModel):
    id: int
    name: Optional[str] = None
    domain: Optional[str] = None
    myshopify_domain: Optional[str] = None
    email: Optional[str] = None
    updated_at: Optional[datetime] = None

    class Config:
        extra = "allow"

    def idempotency_key(self) -> str:
        return f"{self.id}:{_timestamp_key(self.updated_at)}"


class AppPurchaseOneTimeUpdatePayload(BaseModel):
    app_purchase_one_time: AppPurchaseOneTime

    class Config:
        extra = "allow"

    def idempotency_key(self) -> str:
        purchase = self.app_purchase_one_time
        return f"{purchase.charge_id}:{purchase.status}:{_timestamp_key(purchase.updated_at)}"


class ApproachingCappedAmountPayload(BaseModel):
    app_subscription: CappedAmountSubscription

    class Config:
        extra = "allow"

    def idempotency_key(self) -> str:
        sub = self.app_subscription
        return f"{sub.charge_id}:{sub.balance_used}"


# Envelopes: the queue topic selects the payload model


class AppSubscriptionUpdateEvent(BaseModel):
    topic: Literal["APP_SUBSCRIPTIONS_UPDATE"]
    payload: AppSubscriptionUpdatePayload


class AppUninstalledEvent(BaseModel):
    topic: Literal["APP_UNINSTALLED"]
    payload: AppUninstalledPayload


class AppPurchaseOneTimeUpdateEvent(BaseModel):
    topic: Literal["APP_PURCHASES_ONE_TIME_UPDATE"]
    payload: AppPurchaseOneTimeUpdatePayload


class ApproachingCappedAmountEvent(BaseModel):
    topic: Literal["APP_SUBSCRIPTIONS_APPROACHING_CAPPED_AMOUNT"]
    payload: ApproachingCappedAmountPayload


# The main validator. Pydantic reads 'topic' and picks the matching model.
WebhookEvent = Annotated[
    Union[
        AppSubscriptionUpdateEvent,
        AppUninstalledEvent,
        AppPurchaseOneTimeUpdateEvent,
        ApproachingCappedAmountEvent,
    ],
    Field(discriminator="topic"),
]

webhook_event_adapter = TypeAdapter(WebhookEvent)

KNOWN_TOPICS = frozenset(topic.value for topic in WebhookTopic)


def parse_webhook_event(topic: str, payload: Dict[str, Any]):
    """Validate a payload against its topic's model; raises pydantic.ValidationError"""
    return webhook_event_adapter.validate_python({"topic": topic, "payload": payload})
