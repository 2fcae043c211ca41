"""
Usage ledger data models
"""

from dataclasses import dataclass, asdict
from datetime import datetime
from typing import Any, Dict, Optional


@dataclass(frozen=True)
class ServiceLimits:
    """Effective limits for one service; None means unlimited"""

    request_quota: Optional[int]
    token_quota: Optional[int]
    rpm: Optional[int]
    rpd: Optional[int]
    tpm: Optional[int] = None
    tpd: Optional[int] = None
    cycle_end: Optional[datetime] = None


@dataclass(frozen=True)
class RateLimitInfo:
    rpm: Optional[int]
    rpd: Optional[int]
    tpm: Optional[int]
    tpd: Optional[int]


@dataclass(frozen=True)
class UsageState:
    """Snapshot returned after recording usage"""

    service: str
    total_requests: int
    total_tokens: int
    remaining_requests: Optional[int]
    percentage_used: float
    rate_limit: RateLimitInfo

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass(frozen=True)
class LimitViolation:
    """First limit a request would break"""

    limit_type: str  # RPM, RPD, TPM, TPD, REQUEST_QUOTA, TOKEN_QUOTA
    limit: int
    remaining: int
    reset_at: Optional[datetime]
