"""
Shopify Webhook Signature Verification for security and authenticity.

Shopify signs every webhook body with the app's API secret
(X-Shopify-Hmac-Sha256, base64 HMAC-SHA256). Deliveries that fail the
check are rejected at the HTTP boundary and never reach the queue.
"""

import base64
import hashlib
import hmac
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from billing_worker.core.config.settings import settings
from billing_worker.core.logging import get_logger
from billing_worker.shared.helpers import parse_iso_timestamp

logger = get_logger(__name__)


class ShopifyWebhookVerifier:
    """
    Shopify webhook signature verification.

    Features:
    - HMAC-SHA256 signature verification with constant-time comparison
    - Optional X-Shopify-Triggered-At age check against replayed deliveries
    """

    def __init__(
        self,
        secret: Optional[str] = None,
        max_timestamp_age_seconds: Optional[int] = None,
    ):
        self.secret = secret if secret is not None else settings.shopify.SHOPIFY_API_SECRET
        self.max_timestamp_age_seconds = (
            max_timestamp_age_seconds
            if max_timestamp_age_seconds is not None
            else settings.shopify.WEBHOOK_MAX_AGE_SECONDS
        )

    def verify_webhook_signature(
        self,
        payload: bytes,
        signature: Optional[str],
        timestamp: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> Dict[str, Any]:
        """
        Verify Shopify webhook signature

        Args:
            payload: Raw request body
            signature: X-Shopify-Hmac-Sha256 header value
            timestamp: X-Shopify-Triggered-At header value (optional)

        Returns:
            Verification result with status and details
        """
        if not self.secret:
            return {"verified": False, "error": "Webhook secret is not configured"}

        if not signature:
            return {"verified": False, "error": "Missing signature header"}

        if timestamp and self.max_timestamp_age_seconds:
            timestamp_result = self._verify_timestamp(timestamp, now)
            if not timestamp_result["valid"]:
                return {
                    "verified": False,
                    "error": "Invalid timestamp",
                    "details": timestamp_result["error"],
                }

        expected_signature = self._calculate_signature(payload, self.secret)
        if not hmac.compare_digest(signature.encode("utf-8"), expected_signature.encode("utf-8")):
            return {"verified": False, "error": "Signature verification failed"}

        return {"verified": True, "timestamp": timestamp}

    def _verify_timestamp(self, timestamp: str, now: Optional[datetime] = None) -> Dict[str, Any]:
        webhook_time = parse_iso_timestamp(timestamp)
        if webhook_time is None:
            return {"valid": False, "error": f"Invalid timestamp format: {timestamp}"}

        current_time = now or datetime.now(timezone.utc)
        time_diff = abs((current_time - webhook_time).total_seconds())
        if time_diff > self.max_timestamp_age_seconds:
            return {
                "valid": False,
                "error": f"Timestamp too old: {time_diff:.1f}s > {self.max_timestamp_age_seconds}s",
            }
        return {"valid": True, "time_diff_seconds": time_diff}

    @staticmethod
    def _calculate_signature(payload: bytes, secret: str) -> str:
        """Base64-encoded HMAC-SHA256 of the raw body"""
        signature = hmac.new(secret.encode("utf-8"), payload, hashlib.sha256).digest()
        return base64.b64encode(signature).decode("utf-8")
