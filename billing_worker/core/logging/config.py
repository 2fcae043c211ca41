"""
Logging configuration for the billing worker
"""

from dataclasses import dataclass, field
from typing import Dict
from pydantic import BaseModel


@dataclass
class ConsoleHandlerConfig:
    """Console handler configuration"""

    enabled: bool = True
    level: str = "INFO"


class LoggingConfig(BaseModel):
    """Complete logging configuration"""

    level: str = "INFO"
    format: str = "console"  # json or console
    console: ConsoleHandlerConfig = ConsoleHandlerConfig()

    # Third-party loggers that are too chatty at INFO
    quiet_loggers: Dict[str, str] = {
        "httpx": "WARNING",
        "httpcore": "WARNING",
        "sqlalchemy.engine": "WARNING",
        "aiosqlite": "WARNING",
    }
