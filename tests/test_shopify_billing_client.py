import json
from decimal import Decimal

import httpx
import pytest

from billing_worker.core.exceptions import ShopifyBillingApiError
from billing_worker.domains.billing.services import ShopifyBillingClient
from billing_worker.domains.billing.services.shopify_billing_client import (
    charge_id_from_gid,
    get_shopify_billing_client,
)
from conftest import SHOP


def make_client(handler, token="shpat_test"):
    async def resolve(shop):
        return token

    return ShopifyBillingClient(
        resolve,
        api_version="2024-10",
        test_charges=True,
        transport=httpx.MockTransport(handler),
    )


class TestCreateRecurringCharge:
    @pytest.mark.asyncio
    async def test_sends_mutation_and_parses_charge(self):
        seen = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen["url"] = str(request.url)
            seen["token"] = request.headers["X-Shopify-Access-Token"]
            seen["body"] = json.loads(request.content)
            return httpx.Response(
                200,
                json={
                    "data": {
                        "appSubscriptionCreate": {
                            "userErrors": [],
                            "confirmationUrl": "https://shop/confirm/1001",
                            "appSubscription": {
                                "id": "gid://shopify/AppSubscription/1001",
                                "status": "PENDING",
                            },
                        }
                    }
                },
            )

        charge = await make_client(handler).create_recurring_charge(
            SHOP, "STANDARD", Decimal("30.00"), "USD", "EVERY_30_DAYS", "https://app/callback"
        )

        assert charge.external_id == "1001"
        assert charge.confirmation_url == "https://shop/confirm/1001"
        assert seen["url"] == f"https://{SHOP}/admin/api/2024-10/graphql.json"
        assert seen["token"] == "shpat_test"
        variables = seen["body"]["variables"]
        assert variables["test"] is True
        pricing = variables["lineItems"][0]["plan"]["appRecurringPricingDetails"]
        assert pricing == {
            "price": {"amount": "30.00", "currencyCode": "USD"},
            "interval": "EVERY_30_DAYS",
        }

    @pytest.mark.asyncio
    async def test_user_errors(self):
        def handler(request):
            return httpx.Response(
                200,
                json={
                    "data": {
                        "appSubscriptionCreate": {
                            "userErrors": [{"field": ["price"], "message": "Price is invalid"}],
                            "confirmationUrl": None,
                            "appSubscription": None,
                        }
                    }
                },
            )

        with pytest.raises(ShopifyBillingApiError) as exc_info:
            await make_client(handler).create_recurring_charge(
                SHOP, "STANDARD", Decimal("-1"), "USD", "EVERY_30_DAYS", "https://app/callback"
            )

        assert "Price is invalid" in exc_info.value.message
        assert exc_info.value.user_errors[0]["field"] == ["price"]

    @pytest.mark.asyncio
    async def test_http_error(self):
        def handler(request):
            return httpx.Response(502, text="bad gateway")

        with pytest.raises(ShopifyBillingApiError) as exc_info:
            await make_client(handler).create_recurring_charge(
                SHOP, "STANDARD", Decimal("30.00"), "USD", "EVERY_30_DAYS", "https://app/callback"
            )

        assert exc_info.value.status_code == 502

    @pytest.mark.asyncio
    async def test_missing_access_token(self):
        def handler(request):
            raise AssertionError("no request expected")

        with pytest.raises(ShopifyBillingApiError):
            await make_client(handler, token=None).create_one_time_charge(
                SHOP, "BOOST_500", Decimal("10.00"), "USD", "https://app/callback"
            )

    @pytest.mark.asyncio
    async def test_connection_failure_is_retried(self):
        calls = []

        def handler(request):
            calls.append(request)
            if len(calls) == 1:
                raise httpx.ConnectError("connection refused", request=request)
            return httpx.Response(
                200,
                json={
                    "data": {
                        "appSubscriptionCreate": {
                            "userErrors": [],
                            "confirmationUrl": "https://shop/confirm/1002",
                            "appSubscription": {"id": "gid://shopify/AppSubscription/1002"},
                        }
                    }
                },
            )

        charge = await make_client(handler).create_recurring_charge(
            SHOP, "STANDARD", Decimal("30.00"), "USD", "EVERY_30_DAYS", "https://app/callback"
        )

        assert charge.external_id == "1002"
        assert len(calls) == 2


class TestOtherMutations:
    @pytest.mark.asyncio
    async def test_one_time_charge(self):
        def handler(request):
            body = json.loads(request.content)
            assert body["variables"]["price"] == {"amount": "10.00", "currencyCode": "USD"}
            return httpx.Response(
                200,
                json={
                    "data": {
                        "appPurchaseOneTimeCreate": {
                            "userErrors": [],
                            "confirmationUrl": "https://shop/confirm/55",
                            "appPurchaseOneTime": {
                                "id": "gid://shopify/AppPurchaseOneTime/55",
                                "status": "PENDING",
                            },
                        }
                    }
                },
            )

        charge = await make_client(handler).create_one_time_charge(
            SHOP, "BOOST_500", Decimal("10.00"), "USD", "https://app/callback"
        )

        assert charge.external_id == "55"

    @pytest.mark.asyncio
    async def test_cancel_recurring_charge(self):
        def handler(request):
            body = json.loads(request.content)
            assert body["variables"] == {
                "id": "gid://shopify/AppSubscription/1001",
                "prorate": True,
            }
            return httpx.Response(
                200,
                json={
                    "data": {
                        "appSubscriptionCancel": {
                            "userErrors": [],
                            "appSubscription": {
                                "id": "gid://shopify/AppSubscription/1001",
                                "status": "CANCELLED",
                                "createdAt": "2026-01-01T12:00:00Z",
                                "currentPeriodEnd": "2026-01-31T12:00:00Z",
                                "lineItems": [
                                    {
                                        "plan": {
                                            "pricingDetails": {
                                                "__typename": "AppRecurringPricing",
                                                "price": {"amount": "30.0", "currencyCode": "USD"},
                                            }
                                        }
                                    }
                                ],
                            },
                        }
                    }
                },
            )

        cancelled = await make_client(handler).cancel_recurring_charge(SHOP, "1001", True)

        assert cancelled.status == "CANCELLED"
        assert cancelled.price == Decimal("30.0")

    @pytest.mark.asyncio
    async def test_graphql_errors(self):
        def handler(request):
            return httpx.Response(200, json={"errors": [{"message": "Throttled"}]})

        with pytest.raises(ShopifyBillingApiError):
            await make_client(handler).cancel_recurring_charge(SHOP, "1001", False)


class TestTokenResolution:
    def test_charge_id_from_gid(self):
        assert charge_id_from_gid("gid://shopify/AppSubscription/123") == "123"
        assert charge_id_from_gid("123") == "123"

    @pytest.mark.asyncio
    async def test_offline_session_token_is_used(self, session_factory, seeded):
        tokens = []

        def handler(request):
            tokens.append(request.headers["X-Shopify-Access-Token"])
            return httpx.Response(200, json={"errors": [{"message": "stop"}]})

        client = get_shopify_billing_client(session_factory, transport=httpx.MockTransport(handler))
        with pytest.raises(ShopifyBillingApiError):
            await client.cancel_recurring_charge(SHOP, "1001", False)

        assert tokens == ["shpat_test"]
