"""
Translate domain exceptions into HTTP responses
"""

from typing import List, Tuple, Type

from fastapi import Request
from fastapi.responses import JSONResponse

from billing_worker.core.exceptions import (
    AlreadyTerminatedError,
    BillingProviderError,
    BillingWorkerException,
    ConcurrentUpdateError,
    CreditPackageNotFoundError,
    DuplicateChargeError,
    InvalidTransitionError,
    PaymentNotFoundError,
    PlanNotFoundError,
    QueueItemNotFoundError,
    RateLimitExceededError,
    ShopNotFoundError,
    SubscriptionNotFoundError,
    WebhookPayloadError,
)
from billing_worker.core.logging import get_logger
from billing_worker.shared.helpers import now_utc

logger = get_logger(__name__)

# First match wins
STATUS_CODES: List[Tuple[Type[BillingWorkerException], int]] = [
    (RateLimitExceededError, 429),
    (InvalidTransitionError, 409),
    (AlreadyTerminatedError, 409),
    (DuplicateChargeError, 409),
    (ConcurrentUpdateError, 409),
    (SubscriptionNotFoundError, 404),
    (PlanNotFoundError, 404),
    (ShopNotFoundError, 404),
    (PaymentNotFoundError, 404),
    (CreditPackageNotFoundError, 404),
    (QueueItemNotFoundError, 404),
    (WebhookPayloadError, 400),
    (BillingProviderError, 502),
]


def status_code_for(exc: BillingWorkerException) -> int:
    for exc_type, status_code in STATUS_CODES:
        if isinstance(exc, exc_type):
            return status_code
    return 500


async def billing_worker_exception_handler(
    request: Request, exc: BillingWorkerException
) -> JSONResponse:
    status_code = status_code_for(exc)
    if status_code >= 500:
        logger.error(
            "Request failed",
            path=request.url.path,
            error_code=exc.error_code,
            error=exc.message,
        )
    else:
        logger.info(
            "Request rejected",
            path=request.url.path,
            status_code=status_code,
            error_code=exc.error_code,
        )

    headers = None
    if isinstance(exc, RateLimitExceededError) and exc.retry_after_seconds is not None:
        headers = {"Retry-After": str(exc.retry_after_seconds)}

    return JSONResponse(
        status_code=status_code,
        content={
            "error": exc.error_code,
            "message": exc.message,
            "details": exc.details,
            "timestamp": now_utc().isoformat(),
        },
        headers=headers,
    )
