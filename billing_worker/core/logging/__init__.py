"""
Logging module for the billing worker
"""

from .logger import get_logger, setup_logging, set_log_level, StructuredLogger
from .formatters import JSONFormatter, ConsoleFormatter
from .config import LoggingConfig

__all__ = [
    "get_logger",
    "setup_logging",
    "set_log_level",
    "StructuredLogger",
    "JSONFormatter",
    "ConsoleFormatter",
    "LoggingConfig",
]
