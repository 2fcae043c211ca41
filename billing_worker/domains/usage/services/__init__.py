from .notification_dispatcher import (
    NotificationDispatcher,
    LoggingNotificationDispatcher,
    HttpNotificationDispatcher,
    get_notification_dispatcher,
)
from .usage_ledger import UsageLedger

__all__ = [
    "NotificationDispatcher",
    "LoggingNotificationDispatcher",
    "HttpNotificationDispatcher",
    "get_notification_dispatcher",
    "UsageLedger",
]
