"""Aggregate application use cases."""

from .notifications import NotificationDispatcher, NotificationRetentionSweeper, publish_notification

__all__ = [
    "NotificationDispatcher",
    "NotificationRetentionSweeper",
    "publish_notification",
]
