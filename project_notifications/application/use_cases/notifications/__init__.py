"""Public helpers for publishing and dispatching notifications."""

from .dispatch import (
    BatchResult,
    DeliverySink,
    DispatchOutcome,
    DispatcherOptions,
    NotificationDispatcher,
    retry_delay,
)
from .preferences import (
    NotificationPreferenceFilter,
    PreferenceDecision,
    PreferenceQuery,
    PreferenceResolver,
    default_resolvers,
)
from .publish import (
    NotificationValidationError,
    normalize_recipients,
    normalize_route_segments,
    publish_notification,
)
from .retention import NotificationRetentionSweeper, RetentionOptions

__all__ = [
    "BatchResult",
    "DeliverySink",
    "DispatchOutcome",
    "DispatcherOptions",
    "NotificationDispatcher",
    "NotificationPreferenceFilter",
    "NotificationRetentionSweeper",
    "NotificationValidationError",
    "PreferenceDecision",
    "PreferenceQuery",
    "PreferenceResolver",
    "RetentionOptions",
    "default_resolvers",
    "normalize_recipients",
    "normalize_route_segments",
    "publish_notification",
    "retry_delay",
]
