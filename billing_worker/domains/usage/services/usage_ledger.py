"""
Usage Ledger

Tracks per-shop, per-service consumption of the AI and crawl APIs against
the shop's plan:

- RPM / RPD: requests in the last minute / day (sliding windows)
- TPM / TPD: AI tokens in the last minute / day
- cycle request and token quotas (plan quota plus active credit purchases)

A call is rejected if it would break any single limit. Counter increments
are compare-and-swap updates on UsageCounter.version, so concurrent workers
for the same shop can never jointly overshoot a limit.
"""

from contextlib import asynccontextmanager
from datetime import datetime, timedelta
from typing import AsyncGenerator, Callable, Optional, Tuple

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from billing_worker.core.config.settings import settings
from billing_worker.core.database.models import (
    Shop,
    SubscriptionStatus,
    UsageCounter,
    UsageService,
)
from billing_worker.core.database.session import (
    get_session_context,
    transaction_scope,
)
from billing_worker.core.exceptions import (
    ConcurrentUpdateError,
    PlanNotFoundError,
    RateLimitExceededError,
    ShopNotFoundError,
)
from billing_worker.core.logging import get_logger
from billing_worker.domains.billing.repositories import BillingRepository
from billing_worker.shared.constants.billing import (
    MINUTE_WINDOW_SECONDS,
    DAY_WINDOW_SECONDS,
)
from billing_worker.shared.helpers import now_utc
from ..models import LimitViolation, RateLimitInfo, ServiceLimits, UsageState
from ..repositories import UsageRepository
from .notification_dispatcher import NotificationDispatcher, LoggingNotificationDispatcher

logger = get_logger(__name__)

MINUTE = timedelta(seconds=MINUTE_WINDOW_SECONDS)
DAY = timedelta(seconds=DAY_WINDOW_SECONDS)


def _is_limited(limit: Optional[int]) -> bool:
    return limit is not None and limit > 0


class UsageLedger:
    """Per-shop usage counters and limit enforcement"""

    def __init__(
        self,
        session_factory: Optional[async_sessionmaker[AsyncSession]] = None,
        notifier: Optional[NotificationDispatcher] = None,
        clock: Callable[[], datetime] = now_utc,
        cas_max_retries: Optional[int] = None,
        thresholds: Optional[list] = None,
    ):
        self.session_factory = session_factory
        self.notifier = notifier or LoggingNotificationDispatcher()
        self.clock = clock
        self.cas_max_retries = cas_max_retries or settings.usage.USAGE_CAS_MAX_RETRIES
        self.thresholds = sorted(thresholds or settings.usage.USAGE_NOTIFICATION_THRESHOLDS)

    # ============= LIMIT RESOLUTION =============

    async def _resolve_limits(
        self, session: AsyncSession, shop: str, service: UsageService
    ) -> Tuple[Shop, ServiceLimits]:
        """Limits of the shop's ACTIVE plan, or of the default plan without one"""
        billing_repo = BillingRepository(session)
        shop_row = await billing_repo.get_shop_by_domain(shop)
        if shop_row is None:
            raise ShopNotFoundError(shop)

        subscription = await billing_repo.get_current_subscription(shop_row.id)
        cycle_end = None
        if subscription is not None and subscription.status == SubscriptionStatus.ACTIVE:
            plan = subscription.plan
            cycle_end = subscription.cycle_end
        else:
            plan = await billing_repo.get_plan_by_name(settings.usage.DEFAULT_PLAN_NAME)
            if plan is None:
                raise PlanNotFoundError(settings.usage.DEFAULT_PLAN_NAME)

        extra_requests = await billing_repo.sum_active_credit_requests(shop_row.id, service)

        if service == UsageService.AI_API:
            quota = plan.ai_request_limit
            limits = ServiceLimits(
                request_quota=quota + extra_requests if _is_limited(quota) else None,
                token_quota=plan.ai_token_limit if _is_limited(plan.ai_token_limit) else None,
                rpm=plan.ai_rpm,
                rpd=plan.ai_rpd,
                tpm=plan.ai_tpm,
                tpd=plan.ai_tpd,
                cycle_end=cycle_end,
            )
        else:
            quota = plan.crawl_request_limit
            limits = ServiceLimits(
                request_quota=quota + extra_requests if _is_limited(quota) else None,
                token_quota=None,
                rpm=plan.crawl_rpm,
                rpd=plan.crawl_rpd,
                cycle_end=cycle_end,
            )
        return shop_row, limits

    # ============= LIMIT EVALUATION =============

    async def _find_violation(
        self,
        repo: UsageRepository,
        shop_id: str,
        service: UsageService,
        counter: Optional[UsageCounter],
        limits: ServiceLimits,
        calls: int,
        tokens: int,
        now: datetime,
    ) -> Optional[LimitViolation]:
        """Return the first limit the request would break, checking every window independently"""
        minute = await repo.window_totals(shop_id, service, now - MINUTE)
        day = await repo.window_totals(shop_id, service, now - DAY)

        def window_reset(oldest_at: Optional[datetime], window: timedelta) -> datetime:
            return (oldest_at or now) + window

        windowed = [
            ("RPM", limits.rpm, minute.calls, calls, minute.oldest_at, MINUTE),
            ("RPD", limits.rpd, day.calls, calls, day.oldest_at, DAY),
        ]
        if service == UsageService.AI_API:
            windowed += [
                ("TPM", limits.tpm, minute.tokens, tokens, minute.oldest_at, MINUTE),
                ("TPD", limits.tpd, day.tokens, tokens, day.oldest_at, DAY),
            ]

        for limit_type, limit, used, requested, oldest_at, window in windowed:
            if _is_limited(limit) and used + requested > limit:
                return LimitViolation(
                    limit_type=limit_type,
                    limit=limit,
                    remaining=max(0, limit - used),
                    reset_at=window_reset(oldest_at, window),
                )

        total_requests = counter.total_requests if counter is not None else 0
        total_tokens = counter.total_tokens if counter is not None else 0

        if _is_limited(limits.request_quota) and total_requests + calls > limits.request_quota:
            return LimitViolation(
                limit_type="REQUEST_QUOTA",
                limit=limits.request_quota,
                remaining=max(0, limits.request_quota - total_requests),
                reset_at=limits.cycle_end,
            )
        if _is_limited(limits.token_quota) and total_tokens + tokens > limits.token_quota:
            return LimitViolation(
                limit_type="TOKEN_QUOTA",
                limit=limits.token_quota,
                remaining=max(0, limits.token_quota - total_tokens),
                reset_at=limits.cycle_end,
            )
        return None

    @staticmethod
    def _build_state(
        service: UsageService, counter: Optional[UsageCounter], limits: ServiceLimits
    ) -> UsageState:
        total_requests = counter.total_requests if counter is not None else 0
        total_tokens = counter.total_tokens if counter is not None else 0

        if _is_limited(limits.request_quota):
            remaining = max(0, limits.request_quota - total_requests)
            percentage = round(total_requests / limits.request_quota * 100, 2)
        else:
            remaining = None
            percentage = 0.0

        return UsageState(
            service=service.value,
            total_requests=total_requests,
            total_tokens=total_tokens,
            remaining_requests=remaining,
            percentage_used=percentage,
            rate_limit=RateLimitInfo(
                rpm=limits.rpm, rpd=limits.rpd, tpm=limits.tpm, tpd=limits.tpd
            ),
        )

    # ============= PUBLIC OPERATIONS =============

    async def check_limit(
        self,
        shop: str,
        service: UsageService,
        requested_calls: int = 1,
        requested_tokens: int = 0,
    ) -> bool:
        """Whether the requested call(s) fit every limit right now. Read-only."""
        service = UsageService(service)
        now = self.clock()
        async with get_session_context(self.session_factory) as session:
            shop_row, limits = await self._resolve_limits(session, shop, service)
            repo = UsageRepository(session)
            counter = await repo.get_counter(shop_row.id, service)
            violation = await self._find_violation(
                repo, shop_row.id, service, counter, limits,
                requested_calls, requested_tokens, now,
            )
        return violation is None

    async def get_usage_state(self, shop: str, service: UsageService) -> UsageState:
        service = UsageService(service)
        async with get_session_context(self.session_factory) as session:
            shop_row, limits = await self._resolve_limits(session, shop, service)
            counter = await UsageRepository(session).get_counter(shop_row.id, service)
            return self._build_state(service, counter, limits)

    async def record_usage(
        self,
        shop: str,
        service: UsageService,
        calls: int = 1,
        tokens: int = 0,
        session: Optional[AsyncSession] = None,
    ) -> UsageState:
        """
        Count calls (and tokens) against the shop's limits.

        Pass ``session`` to make the increment part of the caller's own
        transaction. Raises RateLimitExceededError without recording
        anything if any limit would be exceeded.
        """
        state, _ = await self._record(shop, UsageService(service), calls, tokens, session)
        return state

    async def _record(
        self,
        shop: str,
        service: UsageService,
        calls: int,
        tokens: int,
        session: Optional[AsyncSession],
    ) -> Tuple[UsageState, str]:
        if calls < 0 or tokens < 0:
            raise ValueError("calls and tokens must be non-negative")

        now = self.clock()
        async with transaction_scope(session, self.session_factory) as tx:
            shop_row, limits = await self._resolve_limits(tx, shop, service)
            repo = UsageRepository(tx)

            for attempt in range(self.cas_max_retries):
                counter = await repo.get_or_create_counter(shop_row.id, service, now)
                violation = await self._find_violation(
                    repo, shop_row.id, service, counter, limits, calls, tokens, now
                )
                if violation is not None:
                    logger.info(
                        "Usage rejected",
                        shop=shop,
                        service=service.value,
                        limit_type=violation.limit_type,
                        remaining=violation.remaining,
                    )
                    raise RateLimitExceededError(
                        shop=shop,
                        service=service.value,
                        limit_type=violation.limit_type,
                        limit=violation.limit,
                        remaining=violation.remaining,
                        reset_at=violation.reset_at,
                    )

                if await repo.increment_counter(counter.id, counter.version, calls, tokens):
                    event = await repo.add_event(shop_row.id, service, calls, tokens, now)
                    counter = await repo.get_counter(shop_row.id, service)
                    state = self._build_state(service, counter, limits)
                    logger.debug(
                        "Usage recorded",
                        shop=shop,
                        service=service.value,
                        calls=calls,
                        tokens=tokens,
                        total_requests=state.total_requests,
                    )
                    return state, event.id

                logger.debug(
                    "Usage counter changed concurrently, retrying",
                    shop=shop,
                    service=service.value,
                    attempt=attempt + 1,
                )

        raise ConcurrentUpdateError(
            f"Could not record usage for {shop} after {self.cas_max_retries} attempts",
            entity="usage_counter",
            entity_id=shop,
        )

    async def release_usage(self, shop: str, service: UsageService, event_id: str) -> bool:
        """Reverse a recorded reservation; False if a reset already cleared it"""
        service = UsageService(service)
        async with transaction_scope(None, self.session_factory) as tx:
            repo = UsageRepository(tx)
            event = await repo.get_event(event_id)
            if event is None:
                return False

            for _ in range(self.cas_max_retries):
                counter = await repo.get_counter(event.shop_id, service)
                if counter is None:
                    break
                if await repo.release_counter(counter.id, counter.version, event.calls, event.tokens):
                    await repo.delete_event(event_id)
                    logger.info(
                        "Usage reservation released",
                        shop=shop,
                        service=service.value,
                        calls=event.calls,
                        tokens=event.tokens,
                    )
                    return True

        raise ConcurrentUpdateError(
            f"Could not release usage for {shop}",
            entity="usage_counter",
            entity_id=shop,
        )

    @asynccontextmanager
    async def track_usage(
        self,
        shop: str,
        service: UsageService,
        calls: int = 1,
        tokens: int = 0,
    ) -> AsyncGenerator[UsageState, None]:
        """
        Reserve usage around an external call.

        Usage:
            async with ledger.track_usage(shop, UsageService.AI_API, tokens=800):
                await ai_client.generate(...)

        If the body raises, the reservation is released and the error re-raised.
        """
        service = UsageService(service)
        state, event_id = await self._record(shop, service, calls, tokens, None)
        try:
            yield state
        except BaseException:
            await self.release_usage(shop, service, event_id)
            raise

    async def reset_usage_counts(
        self, shop: str, session: Optional[AsyncSession] = None
    ) -> int:
        """
        Zero every counter of the shop and clear its last-notified marker.

        Credit packages only last until the reset, so ACTIVE purchases expire
        here and stop counting toward the quota.
        """
        now = self.clock()
        async with transaction_scope(session, self.session_factory) as tx:
            shop_row = await BillingRepository(tx).get_shop_by_domain(shop)
            if shop_row is None:
                raise ShopNotFoundError(shop)
            reset = await UsageRepository(tx).reset_counters(shop_row.id, now)
            expired = await BillingRepository(tx).expire_active_credit_purchases(shop_row.id)

        logger.info(
            "Usage counters reset", shop=shop, counters=reset, credits_expired=expired
        )
        return reset

    async def handle_usage_notification(
        self,
        usage_state: UsageState,
        shop: str,
        email: Optional[str] = None,
    ) -> Optional[int]:
        """
        Notify once when usage crosses a threshold (80%, 100%).

        The threshold is claimed with a conditional update on
        last_notified_threshold before dispatch, so concurrent callers and
        later calls in the same cycle stay silent. Returns the threshold
        notified, or None.
        """
        crossed = [t for t in self.thresholds if usage_state.percentage_used >= t]
        if not crossed:
            return None
        threshold = crossed[-1]
        service = UsageService(usage_state.service)

        async with transaction_scope(None, self.session_factory) as tx:
            shop_row = await BillingRepository(tx).get_shop_by_domain(shop)
            if shop_row is None:
                raise ShopNotFoundError(shop)
            repo = UsageRepository(tx)
            counter = await repo.get_counter(shop_row.id, service)
            if counter is None or counter.last_notified_threshold >= threshold:
                return None
            claimed = await repo.claim_notification_threshold(
                counter.id, counter.last_notified_threshold, threshold
            )
            if not claimed:
                return None

        delivered = await self.notifier.notify(shop, email, threshold)
        if not delivered:
            logger.error("Usage notification not delivered", shop=shop, threshold=threshold)
        return threshold

    async def purge_expired_events(self, now: Optional[datetime] = None) -> int:
        """Delete usage events that fell out of the day window"""
        cutoff = (now or self.clock()) - DAY
        async with transaction_scope(None, self.session_factory) as tx:
            deleted = await UsageRepository(tx).purge_events_before(cutoff)
        logger.info("Expired usage events purged", deleted=deleted)
        return deleted
