"""
Cron endpoints

Called by the scheduler with the X-Cron-Secret header. Each run is safe to
overlap with another.
"""

from typing import List, Optional

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel

from billing_worker.core.logging import get_logger
from .dependencies import ServiceContainer, get_container, verify_cron_secret

router = APIRouter(
    prefix="/api/cron",
    tags=["cron"],
    dependencies=[Depends(verify_cron_secret)],
)
logger = get_logger(__name__)


class FailedItemResponse(BaseModel):
    id: str
    topic: str
    shop: str
    attempts: int
    error: Optional[str] = None
    processed_at: Optional[str] = None


@router.post("/webhooks/drain")
async def drain_webhook_queue(
    max_items: Optional[int] = Query(None, ge=1, le=100),
    container: ServiceContainer = Depends(get_container),
):
    """Recover stale claims, then process one batch of due webhooks"""
    return await container.webhook_queue_job.run(max_items)


@router.post("/billing/cycles")
async def rollover_billing_cycles(container: ServiceContainer = Depends(get_container)):
    """Advance subscriptions whose cycle ended and reset their usage"""
    return await container.billing_cycle_job.run()


@router.post("/webhooks/cleanup")
async def cleanup_retention(container: ServiceContainer = Depends(get_container)):
    """Purge finished queue items, processing logs and expired usage events"""
    return await container.retention_job.run()


@router.get("/webhooks/failed", response_model=List[FailedItemResponse])
async def list_failed_webhooks(
    limit: int = Query(100, ge=1, le=500),
    container: ServiceContainer = Depends(get_container),
):
    items = await container.processor.list_failed(limit)
    return [
        FailedItemResponse(
            id=item.id,
            topic=item.topic,
            shop=item.shop,
            attempts=item.attempts,
            error=item.error,
            processed_at=item.processed_at.isoformat() if item.processed_at else None,
        )
        for item in items
    ]


@router.post("/webhooks/{item_id}/replay")
async def replay_webhook(item_id: str, container: ServiceContainer = Depends(get_container)):
    """Send a failed item back to pending"""
    item = await container.processor.replay(item_id)
    logger.info("Webhook replay requested", item_id=item_id)
    return {"status": item.status.value, "item_id": item.id, "attempts": item.attempts}
