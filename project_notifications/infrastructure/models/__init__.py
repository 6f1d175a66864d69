"""ORM models used by the application infrastructure."""

from .dispatch_record import ERROR_MAX_LENGTH, DispatchRecordModel
from .notification import NotificationModel
from .preference import LegacyOptOutModel, NotificationPreferenceModel, ProjectMuteModel

__all__ = [
    "DispatchRecordModel",
    "ERROR_MAX_LENGTH",
    "LegacyOptOutModel",
    "NotificationModel",
    "NotificationPreferenceModel",
    "ProjectMuteModel",
]
