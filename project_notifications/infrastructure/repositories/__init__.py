"""Repository implementations for infrastructure layer."""

from .dispatch_record_repository import DispatchRecordRepository, truncate_error
from .notification_repository import NotificationRepository
from .preference_repository import NotificationPreferenceRepository

__all__ = [
    "DispatchRecordRepository",
    "NotificationPreferenceRepository",
    "NotificationRepository",
    "truncate_error",
]
