"""
Usage Notification Dispatcher

Delivers "usage threshold crossed" notices. The ledger decides *when* to
notify (once per threshold per cycle); dispatchers only deliver.
"""

from typing import Optional, Protocol

import httpx

from billing_worker.core.config.settings import settings
from billing_worker.core.logging import get_logger

logger = get_logger(__name__)


class NotificationDispatcher(Protocol):
    async def notify(self, shop: str, email: Optional[str], threshold_crossed: int) -> bool: ...


class LoggingNotificationDispatcher:
    """Records the notice in the application log"""

    async def notify(self, shop: str, email: Optional[str], threshold_crossed: int) -> bool:
        logger.warning(
            "Usage threshold crossed",
            shop=shop,
            email=email,
            threshold=threshold_crossed,
        )
        return True


class HttpNotificationDispatcher:
    """Posts the notice as JSON to an email/notification relay"""

    def __init__(
        self,
        url: str,
        timeout: float = 10.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.url = url
        self.timeout = timeout
        self._transport = transport

    async def notify(self, shop: str, email: Optional[str], threshold_crossed: int) -> bool:
        payload = {
            "type": "usage_threshold",
            "shop": shop,
            "email": email,
            "threshold": threshold_crossed,
        }
        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
                response = await client.post(self.url, json=payload)
                response.raise_for_status()
        except httpx.HTTPError as e:
            logger.error(
                "Usage notification delivery failed",
                shop=shop,
                threshold=threshold_crossed,
                error=str(e),
            )
            return False

        logger.info("Usage notification sent", shop=shop, threshold=threshold_crossed)
        return True


def get_notification_dispatcher() -> NotificationDispatcher:
    if settings.usage.NOTIFICATION_WEBHOOK_URL:
        return HttpNotificationDispatcher(settings.usage.NOTIFICATION_WEBHOOK_URL)
    return LoggingNotificationDispatcher()
