"""
Service wiring for the HTTP layer

Services are built once at startup and kept on app.state; route handlers
resolve them through the dependencies below.
"""

from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Optional

from fastapi import Header, HTTPException, Request
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from billing_worker.core.config.settings import settings
from billing_worker.core.redis import ReadThroughCache
from billing_worker.domains.billing.services import (
    BillingProviderClient,
    CreditService,
    PaymentService,
    SubscriptionService,
)
from billing_worker.domains.usage.services import NotificationDispatcher, UsageLedger
from billing_worker.jobs import BillingCycleJob, RetentionJob, WebhookQueueJob
from billing_worker.shared.helpers import now_utc
from billing_worker.webhooks import (
    RetryPolicy,
    ShopifyWebhookVerifier,
    WebhookQueueProcessor,
    build_topic_handlers,
)


@dataclass
class ServiceContainer:
    subscriptions: SubscriptionService
    payments: PaymentService
    credits: CreditService
    usage_ledger: UsageLedger
    processor: WebhookQueueProcessor
    verifier: ShopifyWebhookVerifier
    webhook_queue_job: WebhookQueueJob
    billing_cycle_job: BillingCycleJob
    retention_job: RetentionJob


def build_container(
    provider: Optional[BillingProviderClient] = None,
    notifier: Optional[NotificationDispatcher] = None,
    cache: Optional[ReadThroughCache] = None,
    session_factory: Optional[async_sessionmaker[AsyncSession]] = None,
    verifier: Optional[ShopifyWebhookVerifier] = None,
    retry_policy: Optional[RetryPolicy] = None,
    clock: Callable[[], datetime] = now_utc,
) -> ServiceContainer:
    """Wire every service against one session factory, cache and clock"""
    cache = cache or ReadThroughCache(None)
    usage_ledger = UsageLedger(session_factory=session_factory, notifier=notifier, clock=clock)
    subscriptions = SubscriptionService(
        provider=provider,
        usage_ledger=usage_ledger,
        cache=cache,
        session_factory=session_factory,
        clock=clock,
    )
    credits = CreditService(provider=provider, session_factory=session_factory, clock=clock)
    processor = WebhookQueueProcessor(
        build_topic_handlers(subscriptions, credits, usage_ledger.notifier),
        retry_policy=retry_policy,
        session_factory=session_factory,
        clock=clock,
        cache=cache,
    )
    return ServiceContainer(
        subscriptions=subscriptions,
        payments=PaymentService(session_factory=session_factory, clock=clock),
        credits=credits,
        usage_ledger=usage_ledger,
        processor=processor,
        verifier=verifier or ShopifyWebhookVerifier(),
        webhook_queue_job=WebhookQueueJob(processor),
        billing_cycle_job=BillingCycleJob(subscriptions),
        retention_job=RetentionJob(processor, usage_ledger),
    )


def get_container(request: Request) -> ServiceContainer:
    container = getattr(request.app.state, "container", None)
    if container is None:
        raise HTTPException(status_code=503, detail="Services are not initialized")
    return container


def verify_cron_secret(x_cron_secret: str = Header(None)):
    """Verify cron secret for automated endpoints"""
    if not settings.CRON_SECRET or x_cron_secret != settings.CRON_SECRET:
        raise HTTPException(status_code=401, detail="Unauthorized")
    return True
