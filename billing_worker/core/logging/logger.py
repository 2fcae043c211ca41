"""
Main logging module for the billing worker
"""

import logging
import sys
from typing import Optional, Dict

from .config import LoggingConfig
from .formatters import JSONFormatter, ConsoleFormatter

# Global logger cache
_loggers: Dict[str, logging.Logger] = {}


class StructuredLogger:
    """Wrapper around standard Python logger that supports structured logging with keyword arguments"""

    def __init__(self, logger: logging.Logger):
        self._logger = logger

    @property
    def name(self) -> str:
        return self._logger.name

    def _format_message(self, message: str, **kwargs) -> str:
        """Format message with structured data as key=value pairs"""
        if not kwargs:
            return message

        structured_parts = []
        for key, value in kwargs.items():
            if value is None:
                continue
            if isinstance(value, (dict, list)):
                structured_parts.append(f"{key}={str(value)}")
            elif isinstance(value, str) and " " in value:
                # Quote strings with spaces
                structured_parts.append(f'{key}="{value}"')
            else:
                structured_parts.append(f"{key}={value}")

        if structured_parts:
            return f"{message} | {' | '.join(structured_parts)}"
        return message

    def _log(self, level: int, message: str, exc_info=None, **kwargs):
        if not self._logger.isEnabledFor(level):
            return
        self._logger.log(
            level,
            self._format_message(message, **kwargs),
            exc_info=exc_info,
            extra={"extra_fields": {k: v for k, v in kwargs.items() if v is not None}},
        )

    def debug(self, message: str, **kwargs):
        """Log debug message with structured data"""
        self._log(logging.DEBUG, message, **kwargs)

    def info(self, message: str, **kwargs):
        """Log info message with structured data"""
        self._log(logging.INFO, message, **kwargs)

    def warning(self, message: str, **kwargs):
        """Log warning message with structured data"""
        self._log(logging.WARNING, message, **kwargs)

    def error(self, message: str, **kwargs):
        """Log error message with structured data"""
        self._log(logging.ERROR, message, **kwargs)

    def critical(self, message: str, **kwargs):
        """Log critical message with structured data"""
        self._log(logging.CRITICAL, message, **kwargs)

    def exception(self, message: str, **kwargs):
        """Log exception message with structured data"""
        self._log(logging.ERROR, message, exc_info=True, **kwargs)


def setup_logging(config: Optional[LoggingConfig] = None) -> None:
    """Setup logging configuration for the application"""
    if config is None:
        config = LoggingConfig()

    root_logger = logging.getLogger()
    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)

    root_logger.setLevel(getattr(logging, config.level.upper()))

    if config.console.enabled:
        handler = logging.StreamHandler(sys.stdout)
        handler.setLevel(getattr(logging, config.console.level.upper()))
        if config.format == "json":
            handler.setFormatter(JSONFormatter())
        else:
            handler.setFormatter(ConsoleFormatter(use_colors=sys.stdout.isatty()))
        root_logger.addHandler(handler)

    for name, level in config.quiet_loggers.items():
        logging.getLogger(name).setLevel(getattr(logging, level.upper()))

    logging.getLogger(__name__).info("Logging system initialized")


def get_logger(name: str) -> StructuredLogger:
    """Get a structured logger instance"""
    if name not in _loggers:
        _loggers[name] = logging.getLogger(name)

    return StructuredLogger(_loggers[name])


def set_log_level(name: str, level: str) -> None:
    """Set log level for a specific logger"""
    if name not in _loggers:
        _loggers[name] = logging.getLogger(name)
    _loggers[name].setLevel(getattr(logging, level.upper()))
