"""
Configuration-related exceptions
"""

from .base import BillingWorkerException
from typing import Optional


class ConfigurationError(BillingWorkerException):
    """Raised when there's a configuration error"""

    def __init__(
        self,
        message: str,
        config_key: Optional[str] = None,
        details: Optional[dict] = None,
        cause: Optional[Exception] = None,
    ):
        config_details = {"config_key": config_key}
        if details:
            config_details.update(details)
        super().__init__(message, "CONFIG_ERROR", config_details, cause)
