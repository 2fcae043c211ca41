"""
Subscription Service

Owns the subscription lifecycle and billing-cycle arithmetic.

    PENDING --confirm--> ACTIVE --cancel--> CANCELLED
    PENDING --provider decline--> DECLINED
    ACTIVE  --provider decline--> DECLINED
    ACTIVE  --cycle lapse--> EXPIRED
    ACTIVE  <--freeze/unfreeze--> FROZEN

Every transition is a conditional update on the field being changed, so
webhook replays, cron overlaps and concurrent callbacks linearize per shop:
the loser of a race sees rowcount 0 and either no-ops or raises.
"""

import math
from datetime import datetime, timedelta
from decimal import Decimal, ROUND_HALF_UP
from typing import Any, Callable, Dict, List, Optional

from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from billing_worker.core.config.settings import settings
from billing_worker.core.database.models import (
    BillingEvent,
    BillingType,
    DiscountUnit,
    PaymentStatus,
    Plan,
    Promotion,
    PromotionType,
    Shop,
    Subscription,
    SubscriptionStatus,
    UsageService,
)
from billing_worker.core.database.session import transaction_scope
from billing_worker.core.exceptions import (
    AlreadyTerminatedError,
    BillingProviderError,
    ConcurrentUpdateError,
    DuplicateChargeError,
    InvalidTransitionError,
    PlanNotFoundError,
    ShopifyBillingApiError,
    ShopNotFoundError,
    SubscriptionNotFoundError,
)
from billing_worker.core.logging import get_logger
from billing_worker.core.redis import ReadThroughCache
from billing_worker.domains.usage.services import UsageLedger
from billing_worker.shared.helpers import now_utc
from ..models import (
    AppliedDiscount,
    BillingStatus,
    CycleStatus,
    DiscountMetrics,
    SubscribeResult,
)
from ..repositories import BillingRepository
from .shopify_billing_client import BillingProviderClient

logger = get_logger(__name__)

CENT = Decimal("0.01")
BILLING_STATUS_RESOURCE = "billing_status"

# Provider-driven moves accepted per local status; anything else is stale
PROVIDER_TRANSITIONS = {
    SubscriptionStatus.PENDING: {
        SubscriptionStatus.ACTIVE,
        SubscriptionStatus.DECLINED,
        SubscriptionStatus.CANCELLED,
        SubscriptionStatus.EXPIRED,
    },
    SubscriptionStatus.ACTIVE: {
        SubscriptionStatus.CANCELLED,
        SubscriptionStatus.DECLINED,
        SubscriptionStatus.EXPIRED,
        SubscriptionStatus.FROZEN,
    },
    SubscriptionStatus.FROZEN: {
        SubscriptionStatus.ACTIVE,
        SubscriptionStatus.CANCELLED,
        SubscriptionStatus.DECLINED,
        SubscriptionStatus.EXPIRED,
    },
}


def _money(value: Any) -> Decimal:
    return Decimal(value).quantize(CENT, rounding=ROUND_HALF_UP)


class SubscriptionService:
    """
    Subscription state machine.

    Args:
        provider: billing provider client; required for subscribe, and
            used by cancel to cancel the provider charge first
        usage_ledger: ledger whose counters are reset on confirm and rollover
        cache: read-through cache for billing status reads
        session_factory: defaults to the application session factory
        clock: returns the current UTC time
    """

    def __init__(
        self,
        provider: Optional[BillingProviderClient] = None,
        usage_ledger: Optional[UsageLedger] = None,
        cache: Optional[ReadThroughCache] = None,
        session_factory: Optional[async_sessionmaker[AsyncSession]] = None,
        clock: Callable[[], datetime] = now_utc,
    ):
        self.provider = provider
        self.session_factory = session_factory
        self.clock = clock
        self.usage_ledger = usage_ledger or UsageLedger(
            session_factory=session_factory, clock=clock
        )
        self.cache = cache or ReadThroughCache(None)

    async def _invalidate(self, shop: str, session: Optional[AsyncSession] = None) -> None:
        """Drop cached billing status once this call's own transaction committed"""
        if session is not None:
            # The session owner commits later and invalidates after that
            return
        await self.cache.invalidate(shop, BILLING_STATUS_RESOURCE)

    async def _require_shop(self, repo: BillingRepository, shop: str) -> Shop:
        shop_row = await repo.get_shop_by_domain(shop)
        if shop_row is None:
            raise ShopNotFoundError(shop)
        return shop_row

    # ============= PRICING =============

    @staticmethod
    def _promotion_has_slots(promotion: Promotion) -> bool:
        return promotion.max_uses is None or promotion.used_count < promotion.max_uses

    @staticmethod
    def _reduction(promotion: Promotion, price: Decimal) -> Decimal:
        if promotion.discount_unit == DiscountUnit.PERCENTAGE:
            reduction = price * Decimal(promotion.value) / Decimal(100)
        else:
            reduction = Decimal(promotion.value)
        return _money(min(max(reduction, Decimal(0)), price))

    @staticmethod
    def _duration_in_intervals(promotion: Promotion, plan: Plan) -> Optional[int]:
        if promotion.valid_from is None or promotion.valid_until is None:
            return None
        days = (promotion.valid_until - promotion.valid_from).total_seconds() / 86400
        return max(0, int(days // plan.interval_days))

    async def calculate_discount_metrics(
        self, plan: Plan, shop_id: str, session: Optional[AsyncSession] = None
    ) -> DiscountMetrics:
        """
        Price a plan for a shop.

        An in-window EARLY_ADOPTER promotion wins when the shop is flagged as
        an early adopter or the promotion still has free slots; otherwise the
        PLAN_DISCOUNT with the largest reduction applies. Pure read.
        """
        price = _money(plan.price)
        if plan.is_free:
            return DiscountMetrics(
                final_price=price,
                adjusted_amount=Decimal("0.00"),
                duration_limit_in_intervals=None,
                applied_plan_discount=None,
            )

        now = self.clock()
        async with transaction_scope(session, self.session_factory) as tx:
            repo = BillingRepository(tx)
            shop_row = await repo.get_shop(shop_id)
            if shop_row is None:
                raise ShopNotFoundError(shop_id)

            chosen: Optional[Promotion] = None
            early_adopter = await repo.get_active_promotions(
                plan.id, PromotionType.EARLY_ADOPTER, now
            )
            for promotion in early_adopter:
                if shop_row.is_early_adopter or self._promotion_has_slots(promotion):
                    chosen = promotion
                    break

            if chosen is None:
                discounts = [
                    p
                    for p in await repo.get_active_promotions(
                        plan.id, PromotionType.PLAN_DISCOUNT, now
                    )
                    if self._promotion_has_slots(p)
                ]
                if discounts:
                    chosen = max(discounts, key=lambda p: self._reduction(p, price))

        if chosen is None:
            return DiscountMetrics(
                final_price=price,
                adjusted_amount=Decimal("0.00"),
                duration_limit_in_intervals=None,
                applied_plan_discount=None,
            )

        reduction = self._reduction(chosen, price)
        return DiscountMetrics(
            final_price=price - reduction,
            adjusted_amount=reduction,
            duration_limit_in_intervals=self._duration_in_intervals(chosen, plan),
            applied_plan_discount=AppliedDiscount(
                promotion_id=chosen.id,
                code=chosen.code,
                promotion_type=PromotionType(chosen.promotion_type).value,
                discount_unit=DiscountUnit(chosen.discount_unit).value,
                value=Decimal(chosen.value),
            ),
        )

    # ============= CREATE / SUBSCRIBE =============

    async def _insert_pending(
        self,
        repo: BillingRepository,
        shop_row: Shop,
        plan: Plan,
        charge_id: str,
        metrics: DiscountMetrics,
        confirmation_url: Optional[str],
    ) -> Subscription:
        if await repo.get_subscription_by_charge_id(charge_id) is not None:
            raise DuplicateChargeError(charge_id)

        promotion = metrics.applied_plan_discount
        try:
            subscription = await repo.create_subscription(
                shop_id=shop_row.id,
                plan_id=plan.id,
                status=SubscriptionStatus.PENDING,
                shopify_subscription_id=charge_id,
                confirmation_url=confirmation_url,
                price=metrics.final_price,
                currency_code=plan.currency_code,
                applied_promotion_id=promotion.promotion_id if promotion else None,
                applied_discount=metrics.adjusted_amount,
            )
        except IntegrityError as e:
            raise DuplicateChargeError(charge_id, cause=e) from e

        logger.info(
            "Subscription created",
            shop=shop_row.shop_domain,
            plan=plan.name.value,
            charge_id=charge_id,
            price=str(metrics.final_price),
        )
        return subscription

    async def create(
        self,
        shop: str,
        plan_name: str,
        charge_id: str,
        confirmation_url: Optional[str] = None,
        session: Optional[AsyncSession] = None,
    ) -> Subscription:
        """Insert a PENDING subscription for an already-created provider charge"""
        async with transaction_scope(session, self.session_factory) as tx:
            repo = BillingRepository(tx)
            shop_row = await self._require_shop(repo, shop)
            plan = await repo.get_plan_by_name(plan_name)
            if plan is None:
                raise PlanNotFoundError(plan_name)
            metrics = await self.calculate_discount_metrics(plan, shop_row.id, session=tx)
            subscription = await self._insert_pending(
                repo, shop_row, plan, charge_id, metrics, confirmation_url
            )

        await self._invalidate(shop, session)
        return subscription

    async def subscribe(self, shop: str, plan_name: str, return_url: str) -> SubscribeResult:
        """Create the provider charge, then the PENDING subscription for it"""
        if self.provider is None:
            raise BillingProviderError("No billing provider configured", operation="subscribe")

        async with transaction_scope(None, self.session_factory) as tx:
            repo = BillingRepository(tx)
            shop_row = await self._require_shop(repo, shop)
            plan = await repo.get_plan_by_name(plan_name)
            if plan is None:
                raise PlanNotFoundError(plan_name)
            if plan.is_free:
                raise InvalidTransitionError(
                    "The free plan needs no subscription; cancel the current one instead",
                    target_status=SubscriptionStatus.PENDING.value,
                )
            metrics = await self.calculate_discount_metrics(plan, shop_row.id, session=tx)

        try:
            charge = await self.provider.create_recurring_charge(
                shop,
                plan.name.value,
                metrics.final_price,
                plan.currency_code,
                plan.interval.value,
                return_url,
            )
        except ShopifyBillingApiError as e:
            raise BillingProviderError(
                f"Could not create subscription charge for {shop}: {e.message}",
                operation="create_recurring_charge",
                details=e.details,
                cause=e,
            ) from e

        async with transaction_scope(None, self.session_factory) as tx:
            repo = BillingRepository(tx)
            shop_row = await self._require_shop(repo, shop)
            subscription = await self._insert_pending(
                repo, shop_row, plan, charge.external_id, metrics, charge.confirmation_url
            )

        await self._invalidate(shop)
        return SubscribeResult(
            subscription_id=subscription.id,
            charge_id=charge.external_id,
            confirmation_url=charge.confirmation_url,
            price=metrics.final_price,
        )

    # ============= CONFIRM =============

    async def confirm(
        self, charge_id: str, session: Optional[AsyncSession] = None
    ) -> Subscription:
        """
        PENDING -> ACTIVE for the subscription behind a provider charge.

        Starts the first cycle, supersedes the shop's previous ACTIVE/FROZEN
        subscription, records the first SUCCEEDED payment, uses up the
        promotion slot and resets usage.
        """
        async with transaction_scope(session, self.session_factory) as tx:
            repo = BillingRepository(tx)
            subscription = await repo.get_subscription_by_charge_id(charge_id)
            if subscription is None:
                raise SubscriptionNotFoundError(
                    f"No subscription for charge {charge_id}", {"charge_id": charge_id}
                )
            if subscription.status != SubscriptionStatus.PENDING:
                raise InvalidTransitionError(
                    f"Subscription {subscription.id} is {subscription.status.value}, not PENDING",
                    entity_id=subscription.id,
                    current_status=subscription.status.value,
                    target_status=SubscriptionStatus.ACTIVE.value,
                )

            now = self.clock()
            cycle_end = now + timedelta(days=subscription.plan.interval_days)

            superseded = await repo.supersede_open_subscriptions(
                subscription.shop_id, subscription.id, now
            )
            confirmed = await repo.transition_subscription(
                subscription.id,
                SubscriptionStatus.PENDING,
                SubscriptionStatus.ACTIVE,
                cycle_start=now,
                cycle_end=cycle_end,
                confirmed_at=now,
            )
            if not confirmed:
                current = await repo.get_subscription(subscription.id)
                raise InvalidTransitionError(
                    f"Subscription {subscription.id} was confirmed concurrently",
                    entity_id=subscription.id,
                    current_status=current.status.value,
                    target_status=SubscriptionStatus.ACTIVE.value,
                )

            await repo.create_payment(
                shop_id=subscription.shop_id,
                subscription_id=subscription.id,
                amount=subscription.price,
                currency_code=subscription.currency_code,
                status=PaymentStatus.SUCCEEDED,
                billing_type=BillingType.RECURRING,
                billing_period_start=now,
                billing_period_end=cycle_end,
                transaction_id=charge_id,
            )

            if subscription.applied_promotion_id and not await repo.increment_promotion_usage(
                subscription.applied_promotion_id
            ):
                logger.warning(
                    "Promotion ran out of slots before confirmation",
                    promotion_id=subscription.applied_promotion_id,
                    subscription_id=subscription.id,
                )

            shop_row = await repo.get_shop(subscription.shop_id)
            await self.usage_ledger.reset_usage_counts(shop_row.shop_domain, session=tx)
            subscription = await repo.get_subscription(subscription.id)

        logger.info(
            "Subscription confirmed",
            shop=shop_row.shop_domain,
            subscription_id=subscription.id,
            charge_id=charge_id,
            cycle_end=subscription.cycle_end.isoformat(),
            superseded=superseded,
        )
        await self._invalidate(shop_row.shop_domain, session)
        return subscription

    # ============= CANCEL / FREEZE =============

    def _proration_credit(self, subscription: Subscription, now: datetime) -> Decimal:
        """Unused fraction of the current cycle times the locked-in price"""
        if subscription.cycle_start is None or subscription.cycle_end is None:
            return Decimal("0.00")
        cycle_seconds = (subscription.cycle_end - subscription.cycle_start).total_seconds()
        if cycle_seconds <= 0:
            return Decimal("0.00")
        unused_seconds = max(0.0, (subscription.cycle_end - now).total_seconds())
        fraction = min(1.0, unused_seconds / cycle_seconds)
        return _money(Decimal(subscription.price) * Decimal(str(fraction)))

    async def cancel(
        self,
        subscription_id: str,
        reason: str,
        prorate: bool = False,
        session: Optional[AsyncSession] = None,
    ) -> Subscription:
        """
        ACTIVE/FROZEN -> CANCELLED.

        With prorate, the unused part of the cycle is added to the shop's
        billing credit. Raises AlreadyTerminatedError for terminal
        subscriptions and InvalidTransitionError for PENDING ones.
        """
        async with transaction_scope(session, self.session_factory) as tx:
            repo = BillingRepository(tx)
            subscription = await repo.get_subscription(subscription_id)
            if subscription is None:
                raise SubscriptionNotFoundError(
                    f"Subscription {subscription_id} does not exist",
                    {"subscription_id": subscription_id},
                )
            shop_row = await repo.get_shop(subscription.shop_id)

        status = SubscriptionStatus(subscription.status)
        if status.is_terminal:
            raise AlreadyTerminatedError(subscription_id, status.value)
        if status == SubscriptionStatus.PENDING:
            raise InvalidTransitionError(
                f"Subscription {subscription_id} is PENDING and cannot be cancelled",
                entity_id=subscription_id,
                current_status=status.value,
                target_status=SubscriptionStatus.CANCELLED.value,
            )

        if self.provider is not None:
            try:
                await self.provider.cancel_recurring_charge(
                    shop_row.shop_domain, subscription.shopify_subscription_id, prorate
                )
            except ShopifyBillingApiError as e:
                raise BillingProviderError(
                    f"Could not cancel charge {subscription.shopify_subscription_id}: {e.message}",
                    operation="cancel_recurring_charge",
                    details=e.details,
                    cause=e,
                ) from e

        now = self.clock()
        credit = self._proration_credit(subscription, now) if prorate else None

        async with transaction_scope(session, self.session_factory) as tx:
            repo = BillingRepository(tx)
            cancelled = await repo.transition_subscription(
                subscription_id,
                status,
                SubscriptionStatus.CANCELLED,
                cancelled_at=now,
                cancel_reason=reason,
                proration_credit=credit,
            )
            if not cancelled:
                current = await repo.get_subscription(subscription_id)
                if SubscriptionStatus(current.status).is_terminal:
                    raise AlreadyTerminatedError(subscription_id, current.status.value)
                raise InvalidTransitionError(
                    f"Subscription {subscription_id} changed to {current.status.value} during cancel",
                    entity_id=subscription_id,
                    current_status=current.status.value,
                    target_status=SubscriptionStatus.CANCELLED.value,
                )
            if credit:
                await repo.add_billing_credit(subscription.shop_id, credit)
            subscription = await repo.get_subscription(subscription_id)

        logger.info(
            "Subscription cancelled",
            shop=shop_row.shop_domain,
            subscription_id=subscription_id,
            reason=reason,
            proration_credit=str(credit) if credit is not None else None,
        )
        await self._invalidate(shop_row.shop_domain, session)
        return subscription

    async def _toggle_freeze(
        self,
        subscription_id: str,
        expected: SubscriptionStatus,
        target: SubscriptionStatus,
        session: Optional[AsyncSession],
    ) -> Subscription:
        async with transaction_scope(session, self.session_factory) as tx:
            repo = BillingRepository(tx)
            subscription = await repo.get_subscription(subscription_id)
            if subscription is None:
                raise SubscriptionNotFoundError(
                    f"Subscription {subscription_id} does not exist",
                    {"subscription_id": subscription_id},
                )
            if not await repo.transition_subscription(subscription_id, expected, target):
                current = await repo.get_subscription(subscription_id)
                raise InvalidTransitionError(
                    f"Subscription {subscription_id} is {current.status.value}, not {expected.value}",
                    entity_id=subscription_id,
                    current_status=current.status.value,
                    target_status=target.value,
                )
            subscription = await repo.get_subscription(subscription_id)
            shop_row = await repo.get_shop(subscription.shop_id)

        logger.info(
            f"Subscription {target.value.lower()}",
            shop=shop_row.shop_domain,
            subscription_id=subscription_id,
        )
        await self._invalidate(shop_row.shop_domain, session)
        return subscription

    async def freeze(self, subscription_id: str, session: Optional[AsyncSession] = None) -> Subscription:
        return await self._toggle_freeze(
            subscription_id, SubscriptionStatus.ACTIVE, SubscriptionStatus.FROZEN, session
        )

    async def unfreeze(self, subscription_id: str, session: Optional[AsyncSession] = None) -> Subscription:
        return await self._toggle_freeze(
            subscription_id, SubscriptionStatus.FROZEN, SubscriptionStatus.ACTIVE, session
        )

    async def cancel_current(self, shop: str, reason: str, prorate: bool = False) -> Subscription:
        """Cancel the shop's ACTIVE (or FROZEN) subscription"""
        async with transaction_scope(None, self.session_factory) as tx:
            repo = BillingRepository(tx)
            shop_row = await self._require_shop(repo, shop)
            subscription = await repo.get_current_subscription(shop_row.id)
            if subscription is None:
                raise SubscriptionNotFoundError(
                    f"No active subscription for {shop}", {"shop": shop}
                )
        return await self.cancel(subscription.id, reason, prorate=prorate)

    async def cancel_all_for_shop(
        self, shop: str, reason: str, session: Optional[AsyncSession] = None
    ) -> int:
        """Mark every PENDING/ACTIVE/FROZEN subscription of the shop CANCELLED"""
        async with transaction_scope(session, self.session_factory) as tx:
            repo = BillingRepository(tx)
            shop_row = await self._require_shop(repo, shop)
            cancelled = await repo.cancel_open_subscriptions(shop_row.id, reason, self.clock())

        if cancelled:
            logger.info("Subscriptions cancelled for shop", shop=shop, count=cancelled, reason=reason)
        await self._invalidate(shop, session)
        return cancelled

    # ============= CYCLES =============

    def _cycle_status(self, subscription: Subscription, now: datetime) -> CycleStatus:
        interval = timedelta(days=subscription.plan.interval_days)
        cycle_start = subscription.cycle_start
        cycle_end = subscription.cycle_end
        remaining_days = (cycle_end - now).total_seconds() / 86400
        return CycleStatus(
            subscription_id=subscription.id,
            status=SubscriptionStatus(subscription.status).value,
            is_expired=now > cycle_end,
            is_cycle_transition=(
                subscription.status == SubscriptionStatus.ACTIVE and now >= cycle_end
            ),
            days_until_expiration=max(0, math.floor(remaining_days)),
            current_cycle_start=cycle_start,
            current_cycle_end=cycle_end,
            next_cycle_start=cycle_end,
            next_cycle_end=cycle_end + interval,
        )

    async def check_and_manage_cycle(self, shop: str) -> CycleStatus:
        """Where the shop's current subscription is in its cycle. Pure read."""
        async with transaction_scope(None, self.session_factory) as tx:
            repo = BillingRepository(tx)
            shop_row = await self._require_shop(repo, shop)
            subscription = await repo.get_current_subscription(shop_row.id)
            if subscription is None or subscription.cycle_end is None:
                raise SubscriptionNotFoundError(
                    f"No active subscription for {shop}", {"shop": shop}
                )
            return self._cycle_status(subscription, self.clock())

    async def handle_cycle_transition(
        self, shop: str, session: Optional[AsyncSession] = None
    ) -> bool:
        """
        Roll an ACTIVE subscription into its next cycle once the current one ended.

        The advance is conditional on the old cycle_end, so repeated or
        concurrent calls for the same cycle are no-ops returning False.
        """
        async with transaction_scope(session, self.session_factory) as tx:
            repo = BillingRepository(tx)
            shop_row = await self._require_shop(repo, shop)
            subscription = await repo.get_current_subscription(shop_row.id)
            if subscription is None or subscription.status != SubscriptionStatus.ACTIVE:
                return False

            now = self.clock()
            if subscription.cycle_end is None or now < subscription.cycle_end:
                return False

            new_start = subscription.cycle_end
            new_end = new_start + timedelta(days=subscription.plan.interval_days)
            advanced = await repo.advance_cycle(
                subscription.id, subscription.cycle_end, new_start, new_end
            )
            if not advanced:
                logger.debug("Cycle already advanced", shop=shop, subscription_id=subscription.id)
                return False

            if not subscription.plan.is_free:
                await repo.create_payment(
                    shop_id=shop_row.id,
                    subscription_id=subscription.id,
                    amount=subscription.price,
                    currency_code=subscription.currency_code,
                    status=PaymentStatus.SUCCEEDED,
                    billing_type=BillingType.RECURRING,
                    billing_period_start=new_start,
                    billing_period_end=new_end,
                    transaction_id=f"{subscription.shopify_subscription_id}:{new_start.isoformat()}",
                )

            await self.usage_ledger.reset_usage_counts(shop, session=tx)

        logger.info(
            "Billing cycle advanced",
            shop=shop,
            subscription_id=subscription.id,
            cycle_start=new_start.isoformat(),
            cycle_end=new_end.isoformat(),
        )
        await self._invalidate(shop, session)
        return True

    async def list_shops_due_for_rollover(self, limit: int = 100) -> List[str]:
        async with transaction_scope(None, self.session_factory) as tx:
            return await BillingRepository(tx).list_shops_due_for_rollover(self.clock(), limit)

    # ============= DECISIONS & RECONCILIATION =============

    async def check_subscription_status(
        self,
        plan_name: str,
        shop: str,
        canceled: bool = False,
        email: Optional[str] = None,
    ) -> BillingEvent:
        """Next billing action for the client. Never mutates."""
        if canceled:
            return BillingEvent.CANCEL

        async with transaction_scope(None, self.session_factory) as tx:
            repo = BillingRepository(tx)
            shop_row = await self._require_shop(repo, shop)
            latest = await repo.get_latest_subscription(
                shop_row.id,
                [
                    SubscriptionStatus.ACTIVE,
                    SubscriptionStatus.FROZEN,
                    SubscriptionStatus.EXPIRED,
                ],
            )

        if latest is None:
            return BillingEvent.SUBSCRIBE
        if latest.status == SubscriptionStatus.EXPIRED:
            return BillingEvent.RENEW
        if latest.plan.name.value == (plan_name or "").upper():
            return BillingEvent.RENEW
        return BillingEvent.UPDATE

    async def reconcile_provider_status(
        self,
        shop: str,
        charge_id: str,
        provider_status: str,
        session: Optional[AsyncSession] = None,
    ) -> Subscription:
        """
        Apply a provider-reported status to the local subscription.

        Same status is a no-op, PENDING + ACTIVE runs confirm, and stale
        moves (anything out of a terminal status) are ignored. An unknown
        charge raises SubscriptionNotFoundError so the delivery is retried.
        """
        target = SubscriptionStatus(provider_status.upper())

        async with transaction_scope(session, self.session_factory) as tx:
            repo = BillingRepository(tx)
            subscription = await repo.get_subscription_by_charge_id(charge_id)
            if subscription is None:
                raise SubscriptionNotFoundError(
                    f"No subscription for charge {charge_id}",
                    {"charge_id": charge_id, "shop": shop},
                )

            current = SubscriptionStatus(subscription.status)
            if current == target:
                logger.debug("Provider status unchanged", shop=shop, charge_id=charge_id, status=target.value)
                return subscription

            if current == SubscriptionStatus.PENDING and target == SubscriptionStatus.ACTIVE:
                return await self.confirm(charge_id, session=tx)

            if target not in PROVIDER_TRANSITIONS.get(current, set()):
                logger.warning(
                    "Ignoring stale provider status",
                    shop=shop,
                    charge_id=charge_id,
                    current_status=current.value,
                    provider_status=target.value,
                )
                return subscription

            values: Dict[str, Any] = {}
            if target.is_terminal:
                values = {
                    "cancelled_at": self.clock(),
                    "cancel_reason": f"provider_{target.value.lower()}",
                }
            if not await repo.transition_subscription(subscription.id, current, target, **values):
                raise ConcurrentUpdateError(
                    f"Subscription {subscription.id} changed while applying {target.value}",
                    entity="subscription",
                    entity_id=subscription.id,
                )
            subscription = await repo.get_subscription(subscription.id)

        logger.info(
            "Subscription status reconciled",
            shop=shop,
            charge_id=charge_id,
            from_status=current.value,
            to_status=target.value,
        )
        await self._invalidate(shop, session)
        return subscription

    # ============= READS =============

    async def _load_billing_status(self, shop: str) -> Dict[str, Any]:
        now = self.clock()
        async with transaction_scope(None, self.session_factory) as tx:
            repo = BillingRepository(tx)
            shop_row = await self._require_shop(repo, shop)
            subscription = await repo.get_current_subscription(shop_row.id)
            billing_credit = Decimal(shop_row.billing_credit or 0)

        usage = {}
        for service in UsageService:
            state = await self.usage_ledger.get_usage_state(shop, service)
            usage[service.value] = state.to_dict()

        if subscription is None:
            status = BillingStatus(
                shop=shop,
                plan=settings.usage.DEFAULT_PLAN_NAME,
                subscription_id=None,
                subscription_status=None,
                price=None,
                currency_code=shop_row.currency_code,
                cycle_start=None,
                cycle_end=None,
                days_until_expiration=None,
                billing_credit=billing_credit,
                usage=usage,
            )
        else:
            cycle = self._cycle_status(subscription, now)
            status = BillingStatus(
                shop=shop,
                plan=subscription.plan.name.value,
                subscription_id=subscription.id,
                subscription_status=subscription.status.value,
                price=Decimal(subscription.price),
                currency_code=subscription.currency_code,
                cycle_start=subscription.cycle_start,
                cycle_end=subscription.cycle_end,
                days_until_expiration=cycle.days_until_expiration,
                billing_credit=billing_credit,
                usage=usage,
            )
        return status.to_dict()

    async def get_billing_status(self, shop: str) -> Dict[str, Any]:
        """Current plan, subscription, cycle, credit and usage, via the cache"""
        return await self.cache.get_or_load(
            shop, BILLING_STATUS_RESOURCE, lambda: self._load_billing_status(shop)
        )
