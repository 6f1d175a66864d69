"""Delivery adapters and background workers for notifications."""

from .delivery import (
    CompositeDeliverySink,
    NullDeliverySink,
    RealtimeDeliverySink,
    serialize_notification,
)
from .manager import NotificationConnectionManager, notification_manager
from .workers import DispatcherWorker, RetentionWorker, wait_for_shutdown

__all__ = [
    "CompositeDeliverySink",
    "DispatcherWorker",
    "NotificationConnectionManager",
    "NullDeliverySink",
    "RealtimeDeliverySink",
    "RetentionWorker",
    "notification_manager",
    "serialize_notification",
    "wait_for_shutdown",
]
