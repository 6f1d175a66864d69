"""Pydantic models describing the dispatch diagnostics payload."""

from __future__ import annotations

from datetime import datetime

from pydantic import BaseModel, Field


class FailingDispatchRead(BaseModel):
    """Outbox row that keeps failing and is waiting for its next attempt."""

    id: int
    recipient_id: str
    kind: str
    attempt_count: int
    locked_until: datetime | None = None
    last_error: str | None = None


class DispatchStatusRead(BaseModel):
    """Backlog counters of the notification outbox."""

    pending: int = Field(..., description="Rows not yet dispatched")
    leased: int = Field(..., description="Pending rows currently hidden by a lease or backoff")
    retrying: int = Field(..., description="Pending rows whose last attempt failed")
    dispatched: int = Field(..., description="Rows in a terminal state")
    max_attempt_count: int
    failing: list[FailingDispatchRead] = Field(default_factory=list)


__all__ = ["DispatchStatusRead", "FailingDispatchRead"]
