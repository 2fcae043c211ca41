"""
Queue topic handlers

Each handler applies one Shopify topic to local state. Handlers are
idempotent: the processor may run the same delivery again after a crash or
a manual replay. They write inside the processor's transaction and leave
cache invalidation to the processor, which drops the shop's cached state
after that transaction commits.
"""

from datetime import datetime
from typing import Callable, Dict, Optional, Protocol

from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession

from billing_worker.core.database.models import WebhookTopic
from billing_worker.core.database.session import transaction_scope
from billing_worker.core.logging import get_logger
from billing_worker.domains.billing.repositories import BillingRepository
from billing_worker.domains.billing.services import CreditService, SubscriptionService
from billing_worker.domains.usage.services import NotificationDispatcher
from billing_worker.shared.constants.billing import (
    UNINSTALLED_REASON,
    USAGE_WARNING_THRESHOLD,
)
from billing_worker.shared.helpers import now_utc
from .models import (
    AppPurchaseOneTimeUpdatePayload,
    AppSubscriptionUpdatePayload,
    AppUninstalledPayload,
    ApproachingCappedAmountPayload,
)

logger = get_logger(__name__)


class TopicHandler(Protocol):
    async def handle(
        self, shop: str, payload: BaseModel, session: Optional[AsyncSession] = None
    ) -> None: ...


class AppSubscriptionsUpdateHandler:
    """Mirror the provider's subscription status locally"""

    def __init__(self, subscriptions: SubscriptionService):
        self.subscriptions = subscriptions

    async def handle(
        self,
        shop: str,
        payload: AppSubscriptionUpdatePayload,
        session: Optional[AsyncSession] = None,
    ) -> None:
        subscription = payload.app_subscription
        await self.subscriptions.reconcile_provider_status(
            shop, subscription.charge_id, subscription.status.value, session=session
        )


class AppUninstalledHandler:
    """Tear down an uninstalled shop: sessions, subscriptions, active flag"""

    def __init__(
        self,
        subscriptions: SubscriptionService,
        clock: Callable[[], datetime] = now_utc,
    ):
        self.subscriptions = subscriptions
        self.clock = clock

    async def handle(
        self,
        shop: str,
        payload: AppUninstalledPayload,
        session: Optional[AsyncSession] = None,
    ) -> None:
        async with transaction_scope(session, self.subscriptions.session_factory) as tx:
            repo = BillingRepository(tx)
            deleted_sessions = await repo.delete_sessions(shop)
            shop_row = await repo.get_shop_by_domain(shop)
            cancelled = 0
            deactivated = False
            if shop_row is not None:
                cancelled = await self.subscriptions.cancel_all_for_shop(
                    shop, UNINSTALLED_REASON, session=tx
                )
                deactivated = await repo.mark_shop_uninstalled(shop_row.id, self.clock())

        logger.info(
            "Shop uninstalled",
            shop=shop,
            sessions_deleted=deleted_sessions,
            subscriptions_cancelled=cancelled,
            deactivated=deactivated,
        )


class AppPurchasesOneTimeUpdateHandler:
    """Settle a credit package purchase"""

    def __init__(self, credits: CreditService):
        self.credits = credits

    async def handle(
        self,
        shop: str,
        payload: AppPurchaseOneTimeUpdatePayload,
        session: Optional[AsyncSession] = None,
    ) -> None:
        purchase = payload.app_purchase_one_time
        await self.credits.apply_one_time_update(
            shop, purchase.charge_id, purchase.status, session=session
        )


class ApproachingCappedAmountHandler:
    """Warn the merchant that usage charges near the subscription cap"""

    def __init__(self, notifier: NotificationDispatcher, session_factory=None):
        self.notifier = notifier
        self.session_factory = session_factory

    async def handle(
        self,
        shop: str,
        payload: ApproachingCappedAmountPayload,
        session: Optional[AsyncSession] = None,
    ) -> None:
        subscription = payload.app_subscription
        async with transaction_scope(session, self.session_factory) as tx:
            shop_row = await BillingRepository(tx).get_shop_by_domain(shop)
        email = shop_row.email if shop_row is not None else None

        logger.warning(
            "Subscription approaching capped amount",
            shop=shop,
            charge_id=subscription.charge_id,
            balance_used=subscription.balance_used,
            capped_amount=subscription.capped_amount,
        )
        await self.notifier.notify(shop, email, USAGE_WARNING_THRESHOLD)


def build_topic_handlers(
    subscriptions: SubscriptionService,
    credits: CreditService,
    notifier: NotificationDispatcher,
) -> Dict[str, TopicHandler]:
    """Handler registry keyed by queue topic string"""
    return {
        WebhookTopic.APP_SUBSCRIPTIONS_UPDATE.value: AppSubscriptionsUpdateHandler(subscriptions),
        WebhookTopic.APP_UNINSTALLED.value: AppUninstalledHandler(
            subscriptions, clock=subscriptions.clock
        ),
        WebhookTopic.APP_PURCHASES_ONE_TIME_UPDATE.value: AppPurchasesOneTimeUpdateHandler(credits),
        WebhookTopic.APP_SUBSCRIPTIONS_APPROACHING_CAPPED_AMOUNT.value: ApproachingCappedAmountHandler(
            notifier, subscriptions.session_factory
        ),
    }
