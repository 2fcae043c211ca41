"""
Webhook Queue Processor

Shopify deliveries are validated and deduplicated on enqueue, then drained
by cron in small batches:

    enqueue -> pending --claim--> processing --ok--> completed
                  ^                   |
                  +---- retry --------+--exhausted--> failed (replayable)

Claims are conditional updates on status, so concurrent drains never hand
the same item to two handler invocations. Each item's handler runs in the
same transaction that marks it completed; the shop's cached state is
dropped only after that transaction commits.
"""

import random
import time
from dataclasses import dataclass, asdict
from datetime import datetime, timedelta
from typing import Any, Awaitable, Callable, Dict, List, Optional

from pydantic import ValidationError
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from billing_worker.core.config.settings import settings
from billing_worker.core.database.models import (
    WebhookQueueItem,
    WebhookQueueStatus,
    WebhookLogOutcome,
)
from billing_worker.core.database.session import (
    get_session_context,
    get_transaction_context,
)
from billing_worker.core.exceptions import (
    InvalidTransitionError,
    QueueItemNotFoundError,
    WebhookPayloadError,
    WebhookProcessingError,
)
from billing_worker.core.logging import get_logger
from billing_worker.core.redis import ReadThroughCache
from billing_worker.shared.helpers import now_utc
from .models import KNOWN_TOPICS, parse_webhook_event
from .repository import WebhookQueueRepository
from .topic_handlers import TopicHandler

logger = get_logger(__name__)

AlertHook = Callable[[WebhookQueueItem, WebhookProcessingError], Awaitable[None]]


@dataclass(frozen=True)
class RetryPolicy:
    """
    Backoff between attempts of one queue item.

    delay(n) = min(max_delay, base_delay * 2 ** (n - 1)) +/- jitter fraction.
    With base_delay 0 a failed item is claimable again on the next drain.
    """

    max_attempts: int = 3
    base_delay: float = 0.0
    max_delay: float = 900.0
    jitter: float = 0.0

    @classmethod
    def from_settings(cls) -> "RetryPolicy":
        return cls(
            max_attempts=settings.queue.WEBHOOK_MAX_ATTEMPTS,
            base_delay=settings.queue.WEBHOOK_RETRY_BASE_DELAY,
            max_delay=settings.queue.WEBHOOK_RETRY_MAX_DELAY,
            jitter=settings.queue.WEBHOOK_RETRY_JITTER,
        )

    def delay_for(self, attempts: int) -> float:
        if self.base_delay <= 0:
            return 0.0
        delay = min(self.max_delay, self.base_delay * (2 ** max(0, attempts - 1)))
        if self.jitter:
            delay *= 1 + random.uniform(-self.jitter, self.jitter)
        return max(0.0, delay)


@dataclass
class DrainResult:
    claimed: int = 0
    processed: int = 0
    retried: int = 0
    failed: int = 0

    def to_dict(self) -> Dict[str, int]:
        return asdict(self)


async def log_exhausted_item(item: WebhookQueueItem, error: WebhookProcessingError) -> None:
    """Default operator alert"""
    logger.critical(
        "Webhook processing failed permanently",
        item_id=item.id,
        topic=item.topic,
        shop=item.shop,
        attempts=error.attempts,
        error=str(error.cause or error),
    )


def _describe(error: BaseException) -> str:
    return f"{type(error).__name__}: {error}"


class WebhookQueueProcessor:
    """
    Args:
        handlers: topic string -> handler
        retry_policy: attempt budget and backoff
        alert: awaited once for every item that ends failed
        cache: invalidated for the item's shop after its handler committed
    """

    def __init__(
        self,
        handlers: Dict[str, TopicHandler],
        retry_policy: Optional[RetryPolicy] = None,
        session_factory: Optional[async_sessionmaker[AsyncSession]] = None,
        alert: Optional[AlertHook] = None,
        clock: Callable[[], datetime] = now_utc,
        cache: Optional[ReadThroughCache] = None,
    ):
        self.handlers = handlers
        self.cache = cache or ReadThroughCache(None)
        self.retry_policy = retry_policy or RetryPolicy.from_settings()
        self.session_factory = session_factory
        self.alert = alert or log_exhausted_item
        self.clock = clock

    # ============= ENQUEUE =============

    @staticmethod
    def validate(topic: str, payload: Dict[str, Any]):
        """Parse a payload for its topic or raise WebhookPayloadError"""
        if topic not in KNOWN_TOPICS:
            raise WebhookPayloadError(f"Unknown webhook topic {topic}", topic=topic)
        if not isinstance(payload, dict):
            raise WebhookPayloadError("Webhook payload must be a JSON object", topic=topic)
        try:
            return parse_webhook_event(topic, payload)
        except ValidationError as e:
            raise WebhookPayloadError(
                f"Invalid {topic} payload",
                topic=topic,
                details={"errors": e.errors(include_url=False, include_context=False)},
                cause=e,
            ) from e

    async def enqueue(
        self, topic: str, shop: str, payload: Dict[str, Any]
    ) -> WebhookQueueItem:
        """
        Queue a verified delivery.

        A delivery whose idempotency key matches a non-failed item returns
        that item instead of inserting a second one.
        """
        event = self.validate(topic, payload)
        idempotency_key = event.payload.idempotency_key()

        try:
            async with get_transaction_context(self.session_factory) as session:
                repo = WebhookQueueRepository(session)
                existing = await repo.find_open_item(topic, shop, idempotency_key)
                if existing is not None:
                    logger.debug(
                        "Duplicate webhook ignored",
                        topic=topic,
                        shop=shop,
                        item_id=existing.id,
                        idempotency_key=idempotency_key,
                    )
                    return existing
                item = await repo.insert_item(
                    topic, shop, idempotency_key, payload, available_at=self.clock()
                )
        except IntegrityError:
            # Lost the insert race to a concurrent delivery of the same webhook
            async with get_session_context(self.session_factory) as session:
                existing = await WebhookQueueRepository(session).find_open_item(
                    topic, shop, idempotency_key
                )
            if existing is None:
                raise
            return existing

        logger.info("Webhook queued", topic=topic, shop=shop, item_id=item.id)
        return item

    # ============= DRAIN =============

    async def drain(self, max_items: Optional[int] = None) -> DrainResult:
        """
        Claim and process up to max_items due items.

        Handler errors become retry/failed bookkeeping; database failures
        propagate to the caller.
        """
        limit = max_items or settings.queue.WEBHOOK_BATCH_SIZE
        now = self.clock()
        result = DrainResult()

        async with get_transaction_context(self.session_factory) as session:
            repo = WebhookQueueRepository(session)
            claimed: List[WebhookQueueItem] = []
            for item_id in await repo.list_claimable_ids(now, limit):
                if await repo.claim(item_id, now):
                    claimed.append(await repo.get_item(item_id))

        result.claimed = len(claimed)
        for item in claimed:
            outcome = await self._process(item)
            setattr(result, outcome, getattr(result, outcome) + 1)

        if result.claimed:
            logger.info("Webhook queue drained", **result.to_dict())
        return result

    async def _process(self, item: WebhookQueueItem) -> str:
        started = time.monotonic()
        try:
            event = self.validate(item.topic, item.payload)
            handler = self.handlers.get(item.topic)
            if handler is None:
                raise WebhookPayloadError(f"No handler for topic {item.topic}", topic=item.topic)

            async with get_transaction_context(self.session_factory) as session:
                await handler.handle(item.shop, event.payload, session=session)
                repo = WebhookQueueRepository(session)
                if not await repo.complete(item.id, self.clock()):
                    raise InvalidTransitionError(
                        f"Queue item {item.id} is no longer claimed",
                        entity_id=item.id,
                        target_status=WebhookQueueStatus.COMPLETED.value,
                    )
                await repo.add_log(
                    item,
                    WebhookLogOutcome.COMPLETED,
                    item.attempts,
                    self._elapsed_ms(started),
                )
        except Exception as e:
            error = WebhookProcessingError(
                f"{item.topic} handler failed: {e}",
                item_id=item.id,
                topic=item.topic,
                attempts=item.attempts,
                cause=e,
            )
            return await self._record_failure(item, error, self._elapsed_ms(started))

        await self.cache.invalidate(item.shop)
        logger.info(
            "Webhook processed",
            item_id=item.id,
            topic=item.topic,
            shop=item.shop,
            attempts=item.attempts,
        )
        return "processed"

    @staticmethod
    def _elapsed_ms(started: float) -> int:
        return int((time.monotonic() - started) * 1000)

    async def _record_failure(
        self, item: WebhookQueueItem, error: WebhookProcessingError, elapsed_ms: int
    ) -> str:
        now = self.clock()
        message = _describe(error.cause or error)
        exhausted = item.attempts >= self.retry_policy.max_attempts

        async with get_transaction_context(self.session_factory) as session:
            repo = WebhookQueueRepository(session)
            if exhausted:
                updated = await repo.mark_failed(item.id, now, message)
                outcome = WebhookLogOutcome.FAILED
            else:
                delay = self.retry_policy.delay_for(item.attempts)
                updated = await repo.release_for_retry(
                    item.id, now + timedelta(seconds=delay), message
                )
                outcome = WebhookLogOutcome.RETRY
            if updated:
                await repo.add_log(item, outcome, item.attempts, elapsed_ms, message)

        if not updated:
            logger.warning(
                "Queue item changed before its failure was recorded",
                item_id=item.id,
                topic=item.topic,
            )
            return "failed" if exhausted else "retried"

        if exhausted:
            await self.alert(item, error)
            return "failed"

        logger.warning(
            "Webhook processing failed, will retry",
            item_id=item.id,
            topic=item.topic,
            shop=item.shop,
            attempt=item.attempts,
            max_attempts=self.retry_policy.max_attempts,
            error=message,
        )
        return "retried"

    # ============= OPERATIONS =============

    async def replay(self, item_id: str) -> WebhookQueueItem:
        """Manually send a failed item back to pending with a fresh attempt budget"""
        try:
            async with get_transaction_context(self.session_factory) as session:
                repo = WebhookQueueRepository(session)
                item = await repo.get_item(item_id)
                if item is None:
                    raise QueueItemNotFoundError(item_id)
                if not await repo.requeue_failed(item_id, self.clock()):
                    raise InvalidTransitionError(
                        f"Only failed items can be replayed; {item_id} is {item.status.value}",
                        entity_id=item_id,
                        current_status=item.status.value,
                        target_status=WebhookQueueStatus.PENDING.value,
                    )
                item = await repo.get_item(item_id)
        except IntegrityError as e:
            raise InvalidTransitionError(
                f"A newer delivery of item {item_id} is already queued",
                entity_id=item_id,
                current_status=WebhookQueueStatus.FAILED.value,
                target_status=WebhookQueueStatus.PENDING.value,
            ) from e

        logger.info("Webhook replayed", item_id=item_id, topic=item.topic, shop=item.shop)
        return item

    async def list_failed(self, limit: int = 100) -> List[WebhookQueueItem]:
        async with get_session_context(self.session_factory) as session:
            return await WebhookQueueRepository(session).list_by_status(
                WebhookQueueStatus.FAILED, limit
            )

    async def release_stale(self, older_than: Optional[timedelta] = None) -> int:
        """Recover items whose drainer died mid-processing"""
        timeout = older_than or timedelta(
            seconds=settings.queue.WEBHOOK_VISIBILITY_TIMEOUT_SECONDS
        )
        now = self.clock()
        cutoff = now - timeout
        released = 0
        exhausted_items: List[WebhookQueueItem] = []

        async with get_transaction_context(self.session_factory) as session:
            repo = WebhookQueueRepository(session)
            for item in await repo.list_stale_claims(cutoff):
                exhausted = item.attempts >= self.retry_policy.max_attempts
                if not await repo.release_stale_claim(item.id, cutoff, now, exhausted):
                    continue
                released += 1
                if exhausted:
                    held_ms = int((now - item.claimed_at).total_seconds() * 1000)
                    await repo.add_log(
                        item,
                        WebhookLogOutcome.FAILED,
                        item.attempts,
                        held_ms,
                        "Claim expired after the final attempt",
                    )
                    exhausted_items.append(item)

        if released:
            logger.warning("Released stale webhook claims", count=released)
        for item in exhausted_items:
            await self.alert(
                item,
                WebhookProcessingError(
                    "Webhook claim expired on its final attempt",
                    item_id=item.id,
                    topic=item.topic,
                    attempts=item.attempts,
                ),
            )
        return released

    async def cleanup(self, now: Optional[datetime] = None) -> Dict[str, int]:
        """Retention: purge old completed/failed items and processing logs"""
        now = now or self.clock()
        completed_cutoff = now - timedelta(hours=settings.queue.WEBHOOK_COMPLETED_RETENTION_HOURS)
        failed_cutoff = now - timedelta(days=settings.queue.WEBHOOK_FAILED_RETENTION_DAYS)
        log_cutoff = now - timedelta(days=settings.queue.WEBHOOK_LOG_RETENTION_DAYS)

        async with get_transaction_context(self.session_factory) as session:
            repo = WebhookQueueRepository(session)
            deleted = {
                "completed": await repo.delete_items_before(
                    WebhookQueueStatus.COMPLETED, completed_cutoff
                ),
                "failed": await repo.delete_items_before(
                    WebhookQueueStatus.FAILED, failed_cutoff
                ),
                "logs": await repo.delete_logs_before(log_cutoff),
            }

        logger.info("Webhook queue cleanup finished", **deleted)
        return deleted
