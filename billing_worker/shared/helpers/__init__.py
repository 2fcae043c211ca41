"""
Helper functions for the billing worker
"""

from .datetime_utils import now_utc, parse_iso_timestamp, ensure_utc, add_days

__all__ = ["now_utc", "parse_iso_timestamp", "ensure_utc", "add_days"]
