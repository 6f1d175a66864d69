"""Persistence helpers for notification entities."""

from __future__ import annotations

from collections.abc import Iterable, Sequence
from datetime import datetime

from sqlalchemy import delete, func, select
from sqlalchemy.orm import Session

from project_notifications.domain.entities import Notification
from project_notifications.infrastructure.models import NotificationModel
from project_notifications.utils import ensure_utc, ensure_utc_naive, now_utc_naive

_DELETE_CHUNK_SIZE = 500


class NotificationRepository:
    """Provide storage operations for :class:`Notification` objects."""

    def __init__(self, session: Session) -> None:
        self.session = session

    def list_for_recipient(
        self,
        recipient_id: str,
        *,
        limit: int | None = 50,
    ) -> Sequence[Notification]:
        query = (
            select(NotificationModel)
            .where(NotificationModel.recipient_id == recipient_id)
            .order_by(NotificationModel.created_at.desc(), NotificationModel.id.desc())
        )
        if limit is not None:
            query = query.limit(limit)
        return [self._to_entity(model) for model in self.session.scalars(query)]

    def count_unread(self, recipient_id: str) -> int:
        query = (
            select(func.count(NotificationModel.id))
            .where(NotificationModel.recipient_id == recipient_id)
            .where(NotificationModel.read_at.is_(None))
        )
        return int(self.session.scalar(query) or 0)

    def find_by_fingerprint(self, recipient_id: str, fingerprint: str) -> Notification | None:
        query = (
            select(NotificationModel)
            .where(NotificationModel.recipient_id == recipient_id)
            .where(NotificationModel.fingerprint == fingerprint)
            .limit(1)
        )
        model = self.session.scalars(query).first()
        if model is None:
            return None
        return self._to_entity(model)

    def add(self, notification: Notification) -> Notification:
        """Insert ``notification`` and flush so the storage constraints apply.

        The surrounding transaction is left open; the caller commits.
        """

        model = NotificationModel()
        self._apply_entity_to_model(model, notification)
        self.session.add(model)
        self.session.flush()
        return self._to_entity(model)

    def create(self, notification: Notification) -> Notification:
        saved = self.add(notification)
        self.session.commit()
        return saved

    def list_ids_older_than(self, cutoff: datetime) -> list[int]:
        query = select(NotificationModel.id).where(
            NotificationModel.created_at < ensure_utc_naive(cutoff)
        )
        return list(self.session.scalars(query))

    def list_overflowing_recipients(self, max_per_recipient: int) -> list[str]:
        query = (
            select(NotificationModel.recipient_id)
            .where(NotificationModel.recipient_id.is_not(None))
            .where(NotificationModel.recipient_id != "")
            .group_by(NotificationModel.recipient_id)
            .having(func.count(NotificationModel.id) > max_per_recipient)
        )
        return list(self.session.scalars(query))

    def list_ids_beyond_newest(self, recipient_id: str, keep: int) -> list[int]:
        """Return ids of ``recipient_id``'s notifications past the newest ``keep``."""

        query = (
            select(NotificationModel.id)
            .where(NotificationModel.recipient_id == recipient_id)
            .order_by(NotificationModel.created_at.desc(), NotificationModel.id.desc())
            .offset(keep)
        )
        return list(self.session.scalars(query))

    def delete_ids(self, notification_ids: Iterable[int]) -> int:
        """Delete the given notifications in chunks and return the row count."""

        ids = [notification_id for notification_id in notification_ids if notification_id is not None]
        removed = 0
        for start in range(0, len(ids), _DELETE_CHUNK_SIZE):
            chunk = ids[start : start + _DELETE_CHUNK_SIZE]
            result = self.session.execute(
                delete(NotificationModel)
                .where(NotificationModel.id.in_(chunk))
                .execution_options(synchronize_session=False)
            )
            removed += result.rowcount or 0
        return removed

    @staticmethod
    def _apply_entity_to_model(model: NotificationModel, notification: Notification) -> None:
        model.recipient_id = notification.recipient_id
        model.module = notification.module
        model.event_type = notification.event_type
        model.scope_type = notification.scope_type
        model.scope_id = notification.scope_id
        model.project_id = notification.project_id
        model.actor_id = notification.actor_id
        model.fingerprint = notification.fingerprint or None
        model.route = notification.route
        model.title = notification.title
        model.summary = notification.summary
        model.created_at = ensure_utc_naive(notification.created_at) or now_utc_naive()
        model.seen_at = ensure_utc_naive(notification.seen_at)
        model.read_at = ensure_utc_naive(notification.read_at)
        model.source_dispatch_id = notification.source_dispatch_id

    @staticmethod
    def _to_entity(model: NotificationModel) -> Notification:
        return Notification(
            id=model.id,
            recipient_id=model.recipient_id,
            title=model.title,
            summary=model.summary,
            route=model.route,
            module=model.module,
            event_type=model.event_type,
            scope_type=model.scope_type,
            scope_id=model.scope_id,
            project_id=model.project_id,
            actor_id=model.actor_id,
            fingerprint=model.fingerprint,
            created_at=ensure_utc(model.created_at),
            seen_at=ensure_utc(model.seen_at),
            read_at=ensure_utc(model.read_at),
            source_dispatch_id=model.source_dispatch_id,
        )


__all__ = ["NotificationRepository"]
