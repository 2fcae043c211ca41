"""
Shopify webhook receipt

Verifies the HMAC over the raw body, maps the topic header to a queue topic
and enqueues. Processing happens later in the cron-driven drain, so Shopify
gets its 200 as soon as the delivery is durable.
"""

import json

from fastapi import APIRouter, Depends, Header, HTTPException, Request

from billing_worker.core.logging import get_logger
from billing_worker.shared.constants.billing import SHOPIFY_TOPIC_MAP
from .dependencies import ServiceContainer, get_container

router = APIRouter(prefix="/webhooks", tags=["webhooks"])
logger = get_logger(__name__)


@router.post("/shopify")
async def receive_shopify_webhook(
    request: Request,
    x_shopify_hmac_sha256: str = Header(None),
    x_shopify_topic: str = Header(None),
    x_shopify_shop_domain: str = Header(None),
    x_shopify_triggered_at: str = Header(None),
    container: ServiceContainer = Depends(get_container),
):
    body = await request.body()

    verification = container.verifier.verify_webhook_signature(
        body, x_shopify_hmac_sha256, x_shopify_triggered_at
    )
    if not verification["verified"]:
        logger.warning(
            "Rejected webhook with invalid signature",
            topic=x_shopify_topic,
            shop=x_shopify_shop_domain,
            reason=verification.get("error"),
        )
        raise HTTPException(status_code=401, detail="Invalid webhook signature")

    topic = SHOPIFY_TOPIC_MAP.get(x_shopify_topic or "")
    if topic is None:
        raise HTTPException(status_code=400, detail=f"Unknown webhook topic: {x_shopify_topic}")
    if not x_shopify_shop_domain:
        raise HTTPException(status_code=400, detail="Missing X-Shopify-Shop-Domain header")

    try:
        payload = json.loads(body)
    except ValueError:
        raise HTTPException(status_code=400, detail="Webhook body is not valid JSON")

    # WebhookPayloadError maps to 400 in the app's exception handler
    item = await container.processor.enqueue(topic, x_shopify_shop_domain, payload)
    return {"status": "queued", "item_id": item.id, "topic": topic}
