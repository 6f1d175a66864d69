"""Domain entity representing a user notification."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime


@dataclass
class Notification:
    """Information message visible to a specific recipient."""

    id: int | None
    recipient_id: str
    title: str | None = None
    summary: str | None = None
    route: str | None = None
    module: str | None = None
    event_type: str | None = None
    scope_type: str | None = None
    scope_id: str | None = None
    project_id: int | None = None
    actor_id: str | None = None
    fingerprint: str | None = None
    created_at: datetime | None = None
    seen_at: datetime | None = None
    read_at: datetime | None = None
    source_dispatch_id: int | None = None


__all__ = ["Notification"]
