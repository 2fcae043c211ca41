"""
Usage ledger exceptions
"""

from datetime import datetime
from typing import Optional, Dict, Any

from .base import BillingWorkerException


class RateLimitExceededError(BillingWorkerException):
    """Raised when a call would exceed one of the shop's usage limits"""

    def __init__(
        self,
        shop: str,
        service: str,
        limit_type: str,
        limit: int,
        remaining: int,
        reset_at: Optional[datetime] = None,
    ):
        if reset_at is not None:
            message = (
                f"{limit_type} limit of {limit} reached for {service}; "
                f"{remaining} remaining, resets at {reset_at.isoformat()}"
            )
        else:
            message = f"{limit_type} limit of {limit} reached for {service}; {remaining} remaining"
        super().__init__(
            message,
            "RATE_LIMIT_EXCEEDED",
            {
                "shop": shop,
                "service": service,
                "limit_type": limit_type,
                "limit": limit,
                "remaining": remaining,
                "reset_at": reset_at.isoformat() if reset_at else None,
            },
        )
        self.shop = shop
        self.service = service
        self.limit_type = limit_type
        self.limit = limit
        self.remaining = remaining
        self.reset_at = reset_at

    @property
    def retry_after_seconds(self) -> Optional[int]:
        if self.reset_at is None:
            return None
        delta = (self.reset_at - datetime.now(self.reset_at.tzinfo)).total_seconds()
        return max(0, int(delta) + 1)

    def to_dict(self) -> Dict[str, Any]:
        base_dict = super().to_dict()
        base_dict["retry_after"] = self.retry_after_seconds
        return base_dict
