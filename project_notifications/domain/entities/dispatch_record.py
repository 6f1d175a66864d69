"""Domain entity representing a pending or processed notification intent."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime

from .notification_kind import NotificationKind

ENVELOPE_VERSION = "v1"


@dataclass
class DispatchRecord:
    """One outbox row: deliver ``kind`` to ``recipient_id`` once."""

    id: int | None
    recipient_id: str
    kind: NotificationKind
    payload_json: str
    created_at: datetime | None = None
    module: str | None = None
    event_type: str | None = None
    scope_type: str | None = None
    scope_id: str | None = None
    project_id: int | None = None
    actor_id: str | None = None
    fingerprint: str | None = None
    route: str | None = None
    title: str | None = None
    summary: str | None = None
    dispatched_at: datetime | None = None
    locked_until: datetime | None = None
    attempt_count: int = 0
    last_error: str | None = None

    @property
    def is_terminal(self) -> bool:
        return self.dispatched_at is not None


__all__ = ["DispatchRecord", "ENVELOPE_VERSION"]
