"""Use case recording notification intents in the outbox."""

from __future__ import annotations

import dataclasses
import json
import logging
import re
from collections.abc import Callable, Iterable
from datetime import date, datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel
from sqlalchemy.orm import Session

from project_notifications.domain.entities import (
    ENVELOPE_VERSION,
    DispatchRecord,
    NotificationKind,
)
from project_notifications.infrastructure.repositories import DispatchRecordRepository
from project_notifications.utils import utc_now

logger = logging.getLogger(__name__)

RECIPIENT_MAX_LENGTH = 450

# Column sizes of the outbox table.
METADATA_MAX_LENGTHS: dict[str, int] = {
    "module": 64,
    "event_type": 128,
    "scope_type": 64,
    "scope_id": 128,
    "actor_id": 450,
    "route": 2048,
    "title": 200,
    "summary": 2000,
    "fingerprint": 128,
}

# Envelope keys follow the wire format read by the web client.
_ENVELOPE_KEYS: dict[str, str] = {
    "module": "module",
    "event_type": "eventType",
    "scope_type": "scopeType",
    "scope_id": "scopeId",
    "project_id": "projectId",
    "actor_id": "actorUserId",
    "route": "route",
    "title": "title",
    "summary": "summary",
    "fingerprint": "fingerprint",
}

_PROJECTS_SEGMENT = re.compile(r"(?i)(?<![^/])(projects)(\d+)(?=/|$|\?|#)")


class NotificationValidationError(ValueError):
    """Raised when a publish request cannot be recorded."""

    def __init__(self, field: str, message: str) -> None:
        super().__init__(message)
        self.field = field


def normalize_route_segments(route: str | None) -> str | None:
    """Insert the slash missing from legacy ``/projects42`` style links."""

    if not route:
        return route
    return _PROJECTS_SEGMENT.sub(r"\1/\2", route)


def normalize_recipients(recipients: Iterable[str | None]) -> list[str]:
    """Trim, drop blanks and collapse case-insensitive duplicates in order."""

    unique: list[str] = []
    seen: set[str] = set()
    for recipient in recipients:
        if recipient is None:
            continue
        value = str(recipient).strip()
        if not value:
            continue
        key = value.casefold()
        if key in seen:
            continue
        seen.add(key)
        unique.append(value)
    return unique


def _clean_text(field: str, value: str | None) -> str | None:
    if value is None:
        return None
    text = str(value).strip()
    if not text:
        return None
    max_length = METADATA_MAX_LENGTHS[field]
    if len(text) > max_length:
        msg = f"'{field}' must be at most {max_length} characters (got {len(text)})"
        raise NotificationValidationError(field, msg)
    return text


def _validate_project_id(project_id: int | None) -> int | None:
    if project_id is None:
        return None
    if isinstance(project_id, bool) or not isinstance(project_id, int) or project_id <= 0:
        msg = f"'project_id' must be a positive integer (got {project_id!r})"
        raise NotificationValidationError("project_id", msg)
    return project_id


def _to_plain(value: Any) -> Any:
    """Convert ``value`` into data accepted by :func:`json.dumps`."""

    if isinstance(value, BaseModel):
        return value.model_dump(mode="json")
    if dataclasses.is_dataclass(value) and not isinstance(value, type):
        return _to_plain(dataclasses.asdict(value))
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if isinstance(value, dict):
        return {str(key): _to_plain(item) for key, item in value.items()}
    if isinstance(value, (list, tuple, set, frozenset)):
        return [_to_plain(item) for item in value]
    return value


def build_envelope(payload: Any, metadata: dict[str, Any]) -> str:
    """Serialize ``payload`` with its metadata into the versioned envelope."""

    envelope: dict[str, Any] = {"version": ENVELOPE_VERSION}
    for field, key in _ENVELOPE_KEYS.items():
        value = metadata.get(field)
        if value is not None:
            envelope[key] = value
    envelope["payload"] = _to_plain(payload)
    try:
        return json.dumps(envelope, ensure_ascii=False, separators=(",", ":"))
    except (TypeError, ValueError) as exc:
        raise NotificationValidationError("payload", f"payload is not serializable: {exc}") from exc


def publish_notification(
    session: Session,
    kind: NotificationKind | str,
    recipients: Iterable[str | None],
    payload: Any,
    *,
    module: str | None = None,
    event_type: str | None = None,
    scope_type: str | None = None,
    scope_id: str | None = None,
    project_id: int | None = None,
    actor_id: str | None = None,
    route: str | None = None,
    title: str | None = None,
    summary: str | None = None,
    fingerprint: str | None = None,
    clock: Callable[[], datetime] | None = None,
) -> list[DispatchRecord]:
    """Record one outbox row per recipient for a notification event.

    Validation happens before anything is written; a failure raises
    :class:`NotificationValidationError` naming the offending field. The rows
    share one serialized envelope and are committed together. Duplicate events
    are not detected here, the dispatcher collapses them by ``fingerprint``.
    """

    try:
        notification_kind = NotificationKind.coerce(kind)
    except ValueError as exc:
        raise NotificationValidationError("kind", str(exc)) from exc

    if recipients is None:
        raise NotificationValidationError("recipients", "'recipients' is required")
    if isinstance(recipients, str):
        recipients = [recipients]

    unique_recipients = normalize_recipients(recipients)
    for recipient in unique_recipients:
        if len(recipient) > RECIPIENT_MAX_LENGTH:
            msg = f"'recipients' entries must be at most {RECIPIENT_MAX_LENGTH} characters"
            raise NotificationValidationError("recipients", msg)

    metadata: dict[str, Any] = {
        "module": _clean_text("module", module),
        "event_type": _clean_text("event_type", event_type),
        "scope_type": _clean_text("scope_type", scope_type),
        "scope_id": _clean_text("scope_id", scope_id),
        "project_id": _validate_project_id(project_id),
        "actor_id": _clean_text("actor_id", actor_id),
        "route": normalize_route_segments(_clean_text("route", route)),
        "title": _clean_text("title", title),
        "summary": _clean_text("summary", summary),
        "fingerprint": _clean_text("fingerprint", fingerprint),
    }
    payload_json = build_envelope(payload, metadata)

    if not unique_recipients:
        logger.info(
            "Skipping %s notification without recipients (module=%s, event_type=%s)",
            notification_kind.value,
            metadata["module"],
            metadata["event_type"],
        )
        return []

    created_at = (clock or utc_now)()
    records = [
        DispatchRecord(
            id=None,
            recipient_id=recipient,
            kind=notification_kind,
            payload_json=payload_json,
            created_at=created_at,
            attempt_count=0,
            **metadata,
        )
        for recipient in unique_recipients
    ]

    saved = DispatchRecordRepository(session).create_many(records)
    logger.info(
        "Queued %s notification for %d recipient(s) (module=%s, event_type=%s, fingerprint=%s)",
        notification_kind.value,
        len(saved),
        metadata["module"],
        metadata["event_type"],
        metadata["fingerprint"],
    )
    return saved


__all__ = [
    "METADATA_MAX_LENGTHS",
    "NotificationValidationError",
    "build_envelope",
    "normalize_recipients",
    "normalize_route_segments",
    "publish_notification",
]
