"""
Database-related exceptions
"""

from .base import BillingWorkerException
from typing import Optional, Dict, Any


class DatabaseError(BillingWorkerException):
    """Base exception for database errors"""

    def __init__(
        self,
        message: str,
        error_code: str = "DATABASE_ERROR",
        details: Optional[Dict[str, Any]] = None,
        cause: Optional[Exception] = None,
    ):
        super().__init__(
            message=message, error_code=error_code, details=details, cause=cause
        )


class ConcurrentUpdateError(DatabaseError):
    """Raised when a compare-and-swap update keeps losing to concurrent writers"""

    def __init__(
        self,
        message: str,
        entity: str,
        entity_id: Optional[str] = None,
        cause: Optional[Exception] = None,
    ):
        super().__init__(
            message=message,
            error_code="CONCURRENT_UPDATE",
            details={"entity": entity, "entity_id": entity_id},
            cause=cause,
        )
