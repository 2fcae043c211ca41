"""
Webhook Queue Repository

Status changes are conditional on the current status, so two drainers can
never both claim, complete or fail the same item.
"""

from datetime import datetime
from typing import Any, Dict, List, Optional

from sqlalchemy import select, update, delete, and_
from sqlalchemy.ext.asyncio import AsyncSession

from billing_worker.core.database.models import (
    WebhookQueueItem,
    WebhookQueueStatus,
    WebhookLog,
    WebhookLogOutcome,
)


class WebhookQueueRepository:
    def __init__(self, session: AsyncSession):
        self.session = session

    async def _transition(
        self,
        item_id: str,
        expected: WebhookQueueStatus,
        values: Dict[str, Any],
        *criteria: Any,
    ) -> bool:
        result = await self.session.execute(
            update(WebhookQueueItem)
            .where(
                and_(
                    WebhookQueueItem.id == item_id,
                    WebhookQueueItem.status == expected,
                    *criteria,
                )
            )
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    # ============= ENQUEUE =============

    async def find_open_item(
        self, topic: str, shop: str, idempotency_key: str
    ) -> Optional[WebhookQueueItem]:
        """Existing non-failed item for the same delivery"""
        result = await self.session.execute(
            select(WebhookQueueItem).where(
                and_(
                    WebhookQueueItem.topic == topic,
                    WebhookQueueItem.shop == shop,
                    WebhookQueueItem.idempotency_key == idempotency_key,
                    WebhookQueueItem.status != WebhookQueueStatus.FAILED,
                )
            )
        )
        return result.scalars().first()

    async def insert_item(
        self,
        topic: str,
        shop: str,
        idempotency_key: str,
        payload: Dict[str, Any],
        available_at: datetime,
    ) -> WebhookQueueItem:
        item = WebhookQueueItem(
            topic=topic,
            shop=shop,
            idempotency_key=idempotency_key,
            payload=payload,
            status=WebhookQueueStatus.PENDING,
            attempts=0,
            available_at=available_at,
        )
        self.session.add(item)
        await self.session.flush()
        return item

    async def get_item(self, item_id: str) -> Optional[WebhookQueueItem]:
        return await self.session.get(WebhookQueueItem, item_id, populate_existing=True)

    # ============= CLAIM & OUTCOMES =============

    async def list_claimable_ids(self, now: datetime, limit: int) -> List[str]:
        result = await self.session.execute(
            select(WebhookQueueItem.id)
            .where(
                and_(
                    WebhookQueueItem.status == WebhookQueueStatus.PENDING,
                    WebhookQueueItem.available_at <= now,
                )
            )
            .order_by(WebhookQueueItem.available_at, WebhookQueueItem.created_at)
            .limit(limit)
        )
        return list(result.scalars().all())

    async def claim(self, item_id: str, now: datetime) -> bool:
        """pending -> processing, counting the attempt"""
        return await self._transition(
            item_id,
            WebhookQueueStatus.PENDING,
            {
                "status": WebhookQueueStatus.PROCESSING,
                "attempts": WebhookQueueItem.attempts + 1,
                "claimed_at": now,
            },
            WebhookQueueItem.available_at <= now,
        )

    async def complete(self, item_id: str, now: datetime) -> bool:
        return await self._transition(
            item_id,
            WebhookQueueStatus.PROCESSING,
            {
                "status": WebhookQueueStatus.COMPLETED,
                "processed_at": now,
                "error": None,
            },
        )

    async def release_for_retry(
        self, item_id: str, available_at: datetime, error: str
    ) -> bool:
        return await self._transition(
            item_id,
            WebhookQueueStatus.PROCESSING,
            {
                "status": WebhookQueueStatus.PENDING,
                "available_at": available_at,
                "claimed_at": None,
                "error": error,
            },
        )

    async def mark_failed(self, item_id: str, now: datetime, error: str) -> bool:
        return await self._transition(
            item_id,
            WebhookQueueStatus.PROCESSING,
            {
                "status": WebhookQueueStatus.FAILED,
                "processed_at": now,
                "error": error,
            },
        )

    async def requeue_failed(self, item_id: str, now: datetime) -> bool:
        """failed -> pending with a fresh attempt budget"""
        return await self._transition(
            item_id,
            WebhookQueueStatus.FAILED,
            {
                "status": WebhookQueueStatus.PENDING,
                "attempts": 0,
                "available_at": now,
                "claimed_at": None,
                "processed_at": None,
                "error": None,
            },
        )

    # ============= STALE CLAIMS =============

    async def list_stale_claims(self, cutoff: datetime) -> List[WebhookQueueItem]:
        result = await self.session.execute(
            select(WebhookQueueItem).where(
                and_(
                    WebhookQueueItem.status == WebhookQueueStatus.PROCESSING,
                    WebhookQueueItem.claimed_at < cutoff,
                )
            )
        )
        return list(result.scalars().all())

    async def release_stale_claim(
        self, item_id: str, cutoff: datetime, now: datetime, exhausted: bool
    ) -> bool:
        """Return an abandoned claim to pending, or fail it when out of attempts"""
        values: Dict[str, Any]
        if exhausted:
            values = {
                "status": WebhookQueueStatus.FAILED,
                "processed_at": now,
                "error": "Claim expired after the final attempt",
            }
        else:
            values = {
                "status": WebhookQueueStatus.PENDING,
                "available_at": now,
                "claimed_at": None,
            }
        return await self._transition(
            item_id,
            WebhookQueueStatus.PROCESSING,
            values,
            WebhookQueueItem.claimed_at < cutoff,
        )

    # ============= QUERIES =============

    async def list_by_status(
        self, status: WebhookQueueStatus, limit: int = 100
    ) -> List[WebhookQueueItem]:
        result = await self.session.execute(
            select(WebhookQueueItem)
            .where(WebhookQueueItem.status == status)
            .order_by(WebhookQueueItem.updated_at.desc())
            .limit(limit)
        )
        return list(result.scalars().all())

    # ============= PROCESSING LOG =============

    async def add_log(
        self,
        item: WebhookQueueItem,
        outcome: WebhookLogOutcome,
        attempt_number: int,
        processing_time_ms: int,
        error: Optional[str] = None,
    ) -> WebhookLog:
        log = WebhookLog(
            queue_item_id=item.id,
            topic=item.topic,
            shop=item.shop,
            outcome=outcome,
            attempt_number=attempt_number,
            processing_time_ms=processing_time_ms,
            error=error,
        )
        self.session.add(log)
        await self.session.flush()
        return log

    async def list_logs(self, item_id: str) -> List[WebhookLog]:
        result = await self.session.execute(
            select(WebhookLog)
            .where(WebhookLog.queue_item_id == item_id)
            .order_by(WebhookLog.created_at, WebhookLog.attempt_number)
        )
        return list(result.scalars().all())

    # ============= RETENTION =============

    async def delete_items_before(self, status: WebhookQueueStatus, cutoff: datetime) -> int:
        result = await self.session.execute(
            delete(WebhookQueueItem)
            .where(
                and_(
                    WebhookQueueItem.status == status,
                    WebhookQueueItem.processed_at < cutoff,
                )
            )
            .execution_options(synchronize_session=False)
        )
        return result.rowcount

    async def delete_logs_before(self, cutoff: datetime) -> int:
        result = await self.session.execute(
            delete(WebhookLog)
            .where(WebhookLog.created_at < cutoff)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount
