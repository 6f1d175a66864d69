"""Delivery sinks receiving notifications created by the dispatcher."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable, Iterable, Sequence
from typing import Any

from anyio import from_thread
from sqlalchemy.orm import Session

from project_notifications.application.use_cases.notifications.publish import normalize_route_segments
from project_notifications.domain.entities import Notification
from project_notifications.infrastructure.repositories import NotificationRepository

from .manager import NotificationConnectionManager, notification_manager

logger = logging.getLogger(__name__)


def serialize_notification(notification: Notification) -> dict[str, Any]:
    """Return the websocket payload representation for ``notification``."""

    return {
        "id": notification.id,
        "recipient_id": notification.recipient_id,
        "module": notification.module,
        "event_type": notification.event_type,
        "scope_type": notification.scope_type,
        "scope_id": notification.scope_id,
        "project_id": notification.project_id,
        "actor_id": notification.actor_id,
        "route": normalize_route_segments(notification.route),
        "title": notification.title,
        "summary": notification.summary,
        "created_at": notification.created_at.isoformat() if notification.created_at else None,
        "seen_at": notification.seen_at.isoformat() if notification.seen_at else None,
        "read_at": notification.read_at.isoformat() if notification.read_at else None,
    }


class NullDeliverySink:
    """Sink used when no downstream channel is configured."""

    def deliver(self, notifications: Sequence[Notification]) -> None:
        logger.debug("No delivery channel configured; %d notification(s) stored only", len(notifications))


class CompositeDeliverySink:
    """Fan notifications out to several sinks, isolating their failures."""

    def __init__(self, sinks: Iterable[Any]) -> None:
        self._sinks = list(sinks)

    def deliver(self, notifications: Sequence[Notification]) -> None:
        for sink in self._sinks:
            try:
                sink.deliver(notifications)
            except Exception:  # pylint: disable=broad-exception-caught
                logger.exception("Delivery sink %s failed", type(sink).__name__)


class RealtimeDeliverySink:
    """Push notifications and unread counters to connected websockets.

    ``deliver`` normally runs in the dispatcher's worker thread
    (``anyio.to_thread``), so sends are handed back to the event loop with
    ``anyio.from_thread``. Called on the loop itself, sends become tasks.
    """

    def __init__(
        self,
        manager: NotificationConnectionManager = notification_manager,
        *,
        session_factory: Callable[[], Session] | None = None,
    ) -> None:
        self._manager = manager
        self._session_factory = session_factory

    def deliver(self, notifications: Sequence[Notification]) -> None:
        connected = self._manager.connected_recipients(n.recipient_id for n in notifications)
        if not connected:
            return

        for notification in notifications:
            if notification.recipient_id in connected:
                self._schedule(
                    self._manager.push_notification,
                    notification.recipient_id,
                    serialize_notification(notification),
                )

        for recipient_id, count in self._unread_counts(connected).items():
            self._schedule(self._manager.push_unread_count, recipient_id, count)

    def _unread_counts(self, recipient_ids: Sequence[str]) -> dict[str, int]:
        if self._session_factory is None:
            return {}
        session = self._session_factory()
        try:
            repository = NotificationRepository(session)
            return {recipient_id: repository.count_unread(recipient_id) for recipient_id in recipient_ids}
        except Exception:  # pylint: disable=broad-exception-caught
            logger.exception("Failed to compute unread counts for realtime delivery")
            return {}
        finally:
            session.close()

    def _schedule(self, send: Callable[..., Awaitable[None]], recipient_id: str, data: Any) -> None:
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            try:
                from_thread.run(send, recipient_id, data)
            except RuntimeError:
                logger.warning("Realtime delivery skipped: no event loop available")
        else:
            loop.create_task(send(recipient_id, data))


__all__ = [
    "CompositeDeliverySink",
    "NullDeliverySink",
    "RealtimeDeliverySink",
    "serialize_notification",
]
