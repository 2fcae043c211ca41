"""
Shopify Billing Client

Creates and cancels app charges through the Shopify Admin GraphQL API.
Failures are raised as ShopifyBillingApiError; the billing services turn
them into BillingProviderError.
"""

from decimal import Decimal
from typing import Any, Awaitable, Callable, Dict, Optional, Protocol

import httpx
from tenacity import (
    retry,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from billing_worker.core.config.settings import settings
from billing_worker.core.database.session import get_session_context
from billing_worker.core.exceptions import ShopifyBillingApiError
from billing_worker.core.logging import get_logger
from billing_worker.shared.helpers import parse_iso_timestamp
from ..models import ChargeCreation, CancelledCharge
from ..repositories import BillingRepository

logger = get_logger(__name__)

SUBSCRIPTION_GID_PREFIX = "gid://shopify/AppSubscription/"
PURCHASE_GID_PREFIX = "gid://shopify/AppPurchaseOneTime/"


def charge_id_from_gid(gid: str) -> str:
    """gid://shopify/AppSubscription/123 -> 123"""
    return str(gid).rstrip("/").split("/")[-1]


class BillingProviderClient(Protocol):
    """What the billing services need from a billing provider"""

    async def create_recurring_charge(
        self,
        shop: str,
        plan_name: str,
        price: Decimal,
        currency: str,
        interval: str,
        return_url: str,
        trial_days: int = 0,
    ) -> ChargeCreation: ...

    async def create_one_time_charge(
        self,
        shop: str,
        name: str,
        price: Decimal,
        currency: str,
        return_url: str,
    ) -> ChargeCreation: ...

    async def cancel_recurring_charge(
        self, shop: str, external_id: str, prorate: bool
    ) -> CancelledCharge: ...


CREATE_SUBSCRIPTION_MUTATION = """
mutation appSubscriptionCreate($name: String!, $returnUrl: URL!, $test: Boolean, $trialDays: Int, $lineItems: [AppSubscriptionLineItemInput!]!) {
    appSubscriptionCreate(name: $name, returnUrl: $returnUrl, test: $test, trialDays: $trialDays, lineItems: $lineItems) {
        userErrors {
            field
            message
        }
        confirmationUrl
        appSubscription {
            id
            status
        }
    }
}
"""

CREATE_ONE_TIME_MUTATION = """
mutation appPurchaseOneTimeCreate($name: String!, $price: MoneyInput!, $returnUrl: URL!, $test: Boolean) {
    appPurchaseOneTimeCreate(name: $name, price: $price, returnUrl: $returnUrl, test: $test) {
        userErrors {
            field
            message
        }
        confirmationUrl
        appPurchaseOneTime {
            id
            status
        }
    }
}
"""

CANCEL_SUBSCRIPTION_MUTATION = """
mutation appSubscriptionCancel($id: ID!, $prorate: Boolean) {
    appSubscriptionCancel(id: $id, prorate: $prorate) {
        userErrors {
            field
            message
        }
        appSubscription {
            id
            status
            createdAt
            currentPeriodEnd
            lineItems {
                plan {
                    pricingDetails {
                        __typename
                        ... on AppRecurringPricing {
                            price {
                                amount
                                currencyCode
                            }
                        }
                    }
                }
            }
        }
    }
}
"""


class ShopifyBillingClient:
    """
    Shopify Admin GraphQL billing client.

    Args:
        access_token_resolver: coroutine returning the offline access token
            for a shop domain
        transport: optional httpx transport (tests pass httpx.MockTransport)
    """

    def __init__(
        self,
        access_token_resolver: Callable[[str], Awaitable[Optional[str]]],
        api_version: Optional[str] = None,
        test_charges: Optional[bool] = None,
        timeout: Optional[float] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.access_token_resolver = access_token_resolver
        self.api_version = api_version or settings.shopify.SHOPIFY_API_VERSION
        self.test_charges = (
            settings.shopify.SHOPIFY_TEST_CHARGES if test_charges is None else test_charges
        )
        self.timeout = timeout or settings.shopify.SHOPIFY_REQUEST_TIMEOUT
        self._transport = transport

    def _graphql_url(self, shop: str) -> str:
        return f"https://{shop}/admin/api/{self.api_version}/graphql.json"

    # ============= CHARGES =============

    async def create_recurring_charge(
        self,
        shop: str,
        plan_name: str,
        price: Decimal,
        currency: str,
        interval: str,
        return_url: str,
        trial_days: int = 0,
    ) -> ChargeCreation:
        variables = {
            "name": plan_name,
            "returnUrl": return_url,
            "test": self.test_charges,
            "trialDays": trial_days,
            "lineItems": [
                {
                    "plan": {
                        "appRecurringPricingDetails": {
                            "price": {"amount": str(price), "currencyCode": currency},
                            "interval": interval,
                        }
                    }
                }
            ],
        }
        data = await self._mutate(shop, CREATE_SUBSCRIPTION_MUTATION, variables, "appSubscriptionCreate")
        subscription = data.get("appSubscription") or {}
        if not subscription.get("id") or not data.get("confirmationUrl"):
            raise ShopifyBillingApiError("appSubscriptionCreate returned no subscription")

        logger.info(
            "Created recurring charge",
            shop=shop,
            plan=plan_name,
            price=str(price),
            charge_id=charge_id_from_gid(subscription["id"]),
        )
        return ChargeCreation(
            confirmation_url=data["confirmationUrl"],
            external_id=charge_id_from_gid(subscription["id"]),
        )

    async def create_one_time_charge(
        self,
        shop: str,
        name: str,
        price: Decimal,
        currency: str,
        return_url: str,
    ) -> ChargeCreation:
        variables = {
            "name": name,
            "price": {"amount": str(price), "currencyCode": currency},
            "returnUrl": return_url,
            "test": self.test_charges,
        }
        data = await self._mutate(shop, CREATE_ONE_TIME_MUTATION, variables, "appPurchaseOneTimeCreate")
        purchase = data.get("appPurchaseOneTime") or {}
        if not purchase.get("id") or not data.get("confirmationUrl"):
            raise ShopifyBillingApiError("appPurchaseOneTimeCreate returned no purchase")

        return ChargeCreation(
            confirmation_url=data["confirmationUrl"],
            external_id=charge_id_from_gid(purchase["id"]),
        )

    async def cancel_recurring_charge(
        self, shop: str, external_id: str, prorate: bool
    ) -> CancelledCharge:
        variables = {"id": f"{SUBSCRIPTION_GID_PREFIX}{external_id}", "prorate": prorate}
        data = await self._mutate(shop, CANCEL_SUBSCRIPTION_MUTATION, variables, "appSubscriptionCancel")
        subscription = data.get("appSubscription") or {}

        price = None
        for line_item in subscription.get("lineItems") or []:
            pricing = (line_item.get("plan") or {}).get("pricingDetails") or {}
            amount = (pricing.get("price") or {}).get("amount")
            if amount is not None:
                price = Decimal(str(amount))
                break

        return CancelledCharge(
            status=subscription.get("status", "CANCELLED"),
            created_at=parse_iso_timestamp(subscription.get("createdAt") or ""),
            updated_at=parse_iso_timestamp(subscription.get("currentPeriodEnd") or ""),
            price=price,
        )

    # ============= TRANSPORT =============

    async def _mutate(
        self, shop: str, mutation: str, variables: Dict[str, Any], field: str
    ) -> Dict[str, Any]:
        response = await self._make_graphql_request(shop, mutation, variables)

        if response.get("errors"):
            raise ShopifyBillingApiError(
                f"{field} failed: {response['errors']}", user_errors=response["errors"]
            )

        data = (response.get("data") or {}).get(field) or {}
        if data.get("userErrors"):
            raise ShopifyBillingApiError(
                f"{field} rejected: {data['userErrors'][0].get('message')}",
                user_errors=data["userErrors"],
            )
        return data

    async def _make_graphql_request(
        self, shop: str, query: str, variables: Dict[str, Any]
    ) -> Dict[str, Any]:
        """Make a GraphQL request to Shopify"""
        access_token = await self.access_token_resolver(shop)
        if not access_token:
            raise ShopifyBillingApiError(f"No offline access token for {shop}")

        headers = {
            "X-Shopify-Access-Token": access_token,
            "Content-Type": "application/json",
        }
        payload = {"query": query, "variables": variables}

        try:
            response = await self._post(self._graphql_url(shop), payload, headers)
            response.raise_for_status()
            return response.json()
        except httpx.HTTPStatusError as e:
            raise ShopifyBillingApiError(
                f"Shopify returned HTTP {e.response.status_code}",
                status_code=e.response.status_code,
                cause=e,
            ) from e
        except httpx.HTTPError as e:
            raise ShopifyBillingApiError(f"Shopify request failed: {e}", cause=e) from e

    # Only connection failures are retried: the mutation never reached Shopify.
    @retry(
        retry=retry_if_exception_type(httpx.ConnectError),
        stop=stop_after_attempt(settings.shopify.SHOPIFY_MAX_RETRIES),
        wait=wait_exponential(multiplier=settings.shopify.SHOPIFY_RETRY_DELAY, max=10),
        reraise=True,
    )
    async def _post(
        self, url: str, payload: Dict[str, Any], headers: Dict[str, str]
    ) -> httpx.Response:
        async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
            return await client.post(url, json=payload, headers=headers)


def get_shopify_billing_client(
    session_factory=None, transport: Optional[httpx.AsyncBaseTransport] = None
) -> ShopifyBillingClient:
    """Billing client that resolves tokens from the shop's offline session"""

    async def resolve_access_token(shop: str) -> Optional[str]:
        async with get_session_context(session_factory) as session:
            return await BillingRepository(session).get_offline_access_token(shop)

    return ShopifyBillingClient(resolve_access_token, transport=transport)
