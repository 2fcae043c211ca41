"""
Webhook queue exceptions
"""

from typing import Optional, Dict, Any

from .base import BillingWorkerException


class WebhookPayloadError(BillingWorkerException):
    """Raised when a webhook topic is unknown or its payload fails validation"""

    def __init__(
        self,
        message: str,
        topic: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
        cause: Optional[Exception] = None,
    ):
        payload_details = {"topic": topic}
        if details:
            payload_details.update(details)
        super().__init__(message, "WEBHOOK_PAYLOAD_ERROR", payload_details, cause)
        self.topic = topic


class WebhookProcessingError(BillingWorkerException):
    """Raised when a topic handler fails; carries the attempt count"""

    def __init__(
        self,
        message: str,
        item_id: str,
        topic: str,
        attempts: int,
        cause: Optional[Exception] = None,
    ):
        super().__init__(
            message,
            "WEBHOOK_PROCESSING_ERROR",
            {"item_id": item_id, "topic": topic, "attempts": attempts},
            cause,
        )
        self.item_id = item_id
        self.topic = topic
        self.attempts = attempts


class QueueItemNotFoundError(BillingWorkerException):
    def __init__(self, item_id: str):
        super().__init__(
            f"Webhook queue item {item_id} does not exist",
            "QUEUE_ITEM_NOT_FOUND",
            {"item_id": item_id},
        )
        self.item_id = item_id
