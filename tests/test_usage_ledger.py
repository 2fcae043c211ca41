from datetime import timedelta

import pytest

from billing_worker.core.database.models import UsageService
from billing_worker.core.exceptions import RateLimitExceededError, ShopNotFoundError
from conftest import SHOP, START

AI = UsageService.AI_API
CRAWL = UsageService.CRAWL_API


@pytest.fixture
async def pro_subscription(subscriptions):
    """PRO has quotas but no rate limits"""
    await subscriptions.create(SHOP, "PRO", "2002")
    return await subscriptions.confirm("2002")


class TestRateWindows:
    @pytest.mark.asyncio
    async def test_minute_window_then_day_window(self, ledger, active_subscription, clock):
        for _ in range(3):
            await ledger.record_usage(SHOP, AI)

        with pytest.raises(RateLimitExceededError) as exc_info:
            await ledger.record_usage(SHOP, AI)
        assert exc_info.value.limit_type == "RPM"
        assert exc_info.value.remaining == 0
        assert exc_info.value.reset_at == START + timedelta(seconds=60)

        clock.advance(seconds=61)
        await ledger.record_usage(SHOP, AI)
        await ledger.record_usage(SHOP, AI)

        with pytest.raises(RateLimitExceededError) as exc_info:
            await ledger.record_usage(SHOP, AI)
        assert exc_info.value.limit_type == "RPD"
        assert exc_info.value.limit == 5
        assert exc_info.value.reset_at == START + timedelta(days=1)

        state = await ledger.get_usage_state(SHOP, AI)
        assert state.total_requests == 5

    @pytest.mark.asyncio
    async def test_token_minute_window(self, ledger, active_subscription):
        await ledger.record_usage(SHOP, AI, tokens=4000)

        with pytest.raises(RateLimitExceededError) as exc_info:
            await ledger.record_usage(SHOP, AI, tokens=2000)

        assert exc_info.value.limit_type == "TPM"
        assert exc_info.value.remaining == 1000

    @pytest.mark.asyncio
    async def test_rejected_call_records_nothing(self, ledger, active_subscription):
        await ledger.record_usage(SHOP, AI, calls=3)

        with pytest.raises(RateLimitExceededError):
            await ledger.record_usage(SHOP, AI)

        assert (await ledger.get_usage_state(SHOP, AI)).total_requests == 3

    @pytest.mark.asyncio
    async def test_check_limit_is_read_only(self, ledger, active_subscription):
        assert await ledger.check_limit(SHOP, AI, requested_calls=3) is True
        assert await ledger.check_limit(SHOP, AI, requested_calls=4) is False
        assert (await ledger.get_usage_state(SHOP, AI)).total_requests == 0

    @pytest.mark.asyncio
    async def test_services_are_counted_separately(self, ledger, active_subscription):
        await ledger.record_usage(SHOP, AI, calls=3)

        state = await ledger.record_usage(SHOP, CRAWL, calls=5)

        assert state.service == "CRAWL_API"
        assert state.total_requests == 5
        assert state.remaining_requests == 45


class TestQuotas:
    @pytest.mark.asyncio
    async def test_request_quota_resets_with_cycle(self, ledger, pro_subscription):
        await ledger.record_usage(SHOP, AI, calls=1000)

        with pytest.raises(RateLimitExceededError) as exc_info:
            await ledger.record_usage(SHOP, AI)

        assert exc_info.value.limit_type == "REQUEST_QUOTA"
        assert exc_info.value.reset_at == pro_subscription.cycle_end

    @pytest.mark.asyncio
    async def test_free_limits_without_subscription(self, ledger):
        state = await ledger.get_usage_state(SHOP, AI)

        assert state.remaining_requests == 20
        assert state.rate_limit.rpm == 5
        assert state.rate_limit.rpd == 10

    @pytest.mark.asyncio
    async def test_frozen_subscription_falls_back_to_free_limits(
        self, ledger, subscriptions, active_subscription
    ):
        await subscriptions.freeze(active_subscription.id)

        state = await ledger.get_usage_state(SHOP, AI)

        assert state.remaining_requests == 20
        assert state.rate_limit.rpm == 5

    @pytest.mark.asyncio
    async def test_unknown_shop(self, ledger):
        with pytest.raises(ShopNotFoundError):
            await ledger.record_usage("missing.myshopify.com", AI)

    @pytest.mark.asyncio
    async def test_negative_usage(self, ledger):
        with pytest.raises(ValueError):
            await ledger.record_usage(SHOP, AI, calls=-1)


class TestResetAndRelease:
    @pytest.mark.asyncio
    async def test_reset_clears_counters_and_windows(self, ledger, active_subscription):
        await ledger.record_usage(SHOP, AI, calls=3)

        assert await ledger.reset_usage_counts(SHOP) == 1

        assert (await ledger.get_usage_state(SHOP, AI)).total_requests == 0
        await ledger.record_usage(SHOP, AI, calls=3)

    @pytest.mark.asyncio
    async def test_track_usage_releases_on_error(self, ledger, active_subscription):
        with pytest.raises(RuntimeError):
            async with ledger.track_usage(SHOP, AI, tokens=100) as state:
                assert state.total_requests == 1
                raise RuntimeError("upstream failed")

        state = await ledger.get_usage_state(SHOP, AI)
        assert state.total_requests == 0
        assert state.total_tokens == 0

    @pytest.mark.asyncio
    async def test_track_usage_keeps_successful_call(self, ledger, active_subscription):
        async with ledger.track_usage(SHOP, AI):
            pass

        assert (await ledger.get_usage_state(SHOP, AI)).total_requests == 1

    @pytest.mark.asyncio
    async def test_purge_expired_events(self, ledger, active_subscription, clock):
        await ledger.record_usage(SHOP, AI)
        clock.advance(hours=2)
        await ledger.record_usage(SHOP, AI)
        clock.advance(hours=23)

        assert await ledger.purge_expired_events() == 1
        assert (await ledger.get_usage_state(SHOP, AI)).total_requests == 2


class TestNotifications:
    @pytest.mark.asyncio
    async def test_each_threshold_notifies_once(self, ledger, notifier, pro_subscription):
        state = await ledger.record_usage(SHOP, AI, calls=500)
        assert await ledger.handle_usage_notification(state, SHOP) is None

        state = await ledger.record_usage(SHOP, AI, calls=300)
        assert state.percentage_used == 80.0
        assert await ledger.handle_usage_notification(state, SHOP, "owner@test-shop.com") == 80
        assert await ledger.handle_usage_notification(state, SHOP, "owner@test-shop.com") is None

        state = await ledger.record_usage(SHOP, AI, calls=200)
        assert await ledger.handle_usage_notification(state, SHOP, "owner@test-shop.com") == 100

        assert notifier.notify.await_count == 2
        notifier.notify.assert_any_await(SHOP, "owner@test-shop.com", 80)
        notifier.notify.assert_any_await(SHOP, "owner@test-shop.com", 100)

    @pytest.mark.asyncio
    async def test_reset_rearms_notifications(self, ledger, notifier, pro_subscription):
        state = await ledger.record_usage(SHOP, AI, calls=800)
        assert await ledger.handle_usage_notification(state, SHOP) == 80

        await ledger.reset_usage_counts(SHOP)
        state = await ledger.record_usage(SHOP, AI, calls=800)

        assert await ledger.handle_usage_notification(state, SHOP) == 80
