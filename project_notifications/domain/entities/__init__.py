"""Domain entities exposed by the application."""

from .dispatch_record import ENVELOPE_VERSION, DispatchRecord
from .notification import Notification
from .notification_kind import GRANDFATHERED_OPT_OUT_KINDS, NotificationKind

__all__ = [
    "DispatchRecord",
    "ENVELOPE_VERSION",
    "GRANDFATHERED_OPT_OUT_KINDS",
    "Notification",
    "NotificationKind",
]
