"""Persistence helpers for the notification outbox."""

from __future__ import annotations

from collections.abc import Sequence
from datetime import datetime

from sqlalchemy import func, or_, select, update
from sqlalchemy.orm import Session

from project_notifications.domain.entities import DispatchRecord
from project_notifications.infrastructure.models import ERROR_MAX_LENGTH, DispatchRecordModel
from project_notifications.utils import ensure_utc, ensure_utc_naive, now_utc_naive


def truncate_error(message: str | None, max_length: int = ERROR_MAX_LENGTH) -> str | None:
    """Clip ``message`` so it fits the ``last_error`` column."""

    if not message:
        return message
    return message if len(message) <= max_length else message[:max_length]


class DispatchRecordRepository:
    """Provide outbox operations for :class:`DispatchRecord` objects.

    Methods that mutate rows only stage the change on the session; the caller
    owns the transaction except where a method documents that it commits.
    Writes after the lease only apply while the row is still pending and still
    carries the caller's ``locked_until`` value.
    """

    def __init__(self, session: Session) -> None:
        self.session = session

    def create_many(self, records: Sequence[DispatchRecord]) -> list[DispatchRecord]:
        """Insert ``records`` in a single transaction and return them with ids."""

        models = [self._new_model(record) for record in records]
        if not models:
            return []
        try:
            self.session.add_all(models)
            self.session.flush()
            # Built before commit so no read transaction is left open afterwards.
            saved = [self._to_entity(model) for model in models]
            self.session.commit()
        except Exception:
            self.session.rollback()
            raise
        return saved

    def get(self, record_id: int) -> DispatchRecord | None:
        model = self.session.get(DispatchRecordModel, record_id)
        if model is None:
            return None
        return self._to_entity(model)

    def list_all(self) -> Sequence[DispatchRecord]:
        query = select(DispatchRecordModel).order_by(
            DispatchRecordModel.created_at, DispatchRecordModel.id
        )
        return [self._to_entity(model) for model in self.session.scalars(query)]

    def lease_ready(
        self, *, now: datetime, limit: int, lease_until: datetime
    ) -> list[DispatchRecord]:
        """Claim up to ``limit`` ready rows until ``lease_until`` and commit.

        A row is ready when it was never dispatched and carries no live lease.
        Every claimed row has its ``attempt_count`` incremented in the same
        write.
        """

        now_naive = ensure_utc_naive(now)
        query = (
            select(DispatchRecordModel)
            .where(DispatchRecordModel.dispatched_at.is_(None))
            .where(
                or_(
                    DispatchRecordModel.locked_until.is_(None),
                    DispatchRecordModel.locked_until <= now_naive,
                )
            )
            .order_by(DispatchRecordModel.created_at, DispatchRecordModel.id)
            .limit(limit)
            .with_for_update(skip_locked=True)
        )
        try:
            models = list(self.session.scalars(query))
            if not models:
                self.session.rollback()
                return []

            lock_value = ensure_utc_naive(lease_until)
            for model in models:
                model.locked_until = lock_value
                model.attempt_count = (model.attempt_count or 0) + 1
            leased = [self._to_entity(model) for model in models]
            self.session.commit()
        except Exception:
            self.session.rollback()
            raise
        return leased

    def mark_dispatched(
        self, record_id: int, *, at: datetime, leased_until: datetime | None
    ) -> bool:
        """Stage the terminal state for ``record_id`` if the lease is still ours.

        ``leased_until`` is the ``locked_until`` value written when the caller
        leased the row. Returns ``False`` when the row has been re-leased or
        finished by another worker; nothing is written in that case.
        """

        return self._update_leased(
            record_id,
            leased_until,
            dispatched_at=ensure_utc_naive(at),
            locked_until=None,
            last_error=None,
        )

    def schedule_retry(
        self,
        record_id: int,
        *,
        retry_at: datetime,
        error: str | None,
        leased_until: datetime | None,
    ) -> bool:
        """Stage a backoff for ``record_id`` leaving it pending.

        Same lease check as :meth:`mark_dispatched`.
        """

        return self._update_leased(
            record_id,
            leased_until,
            locked_until=ensure_utc_naive(retry_at),
            last_error=truncate_error(error),
        )

    def _update_leased(self, record_id: int, leased_until: datetime | None, **values) -> bool:
        lock_value = ensure_utc_naive(leased_until)
        lease_matches = (
            DispatchRecordModel.locked_until.is_(None)
            if lock_value is None
            else DispatchRecordModel.locked_until == lock_value
        )
        result = self.session.execute(
            update(DispatchRecordModel)
            .where(DispatchRecordModel.id == record_id)
            .where(DispatchRecordModel.dispatched_at.is_(None))
            .where(lease_matches)
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        return (result.rowcount or 0) == 1

    def status_summary(self, *, now: datetime) -> dict[str, int]:
        """Return backlog counters used for operational diagnosis."""

        now_naive = ensure_utc_naive(now)
        pending = DispatchRecordModel.dispatched_at.is_(None)
        leased = DispatchRecordModel.locked_until > now_naive

        def _count(*criteria) -> int:
            query = select(func.count(DispatchRecordModel.id)).where(*criteria)
            return int(self.session.scalar(query) or 0)

        max_attempts = self.session.scalar(
            select(func.max(DispatchRecordModel.attempt_count)).where(pending)
        )
        return {
            "pending": _count(pending),
            "leased": _count(pending, leased),
            "retrying": _count(pending, DispatchRecordModel.last_error.is_not(None)),
            "dispatched": _count(DispatchRecordModel.dispatched_at.is_not(None)),
            "max_attempt_count": int(max_attempts or 0),
        }

    def list_failing(self, *, limit: int = 20) -> Sequence[DispatchRecord]:
        """Return pending rows that carry an error, most attempted first."""

        query = (
            select(DispatchRecordModel)
            .where(DispatchRecordModel.dispatched_at.is_(None))
            .where(DispatchRecordModel.last_error.is_not(None))
            .order_by(DispatchRecordModel.attempt_count.desc(), DispatchRecordModel.id)
            .limit(limit)
        )
        return [self._to_entity(model) for model in self.session.scalars(query)]

    @staticmethod
    def _new_model(record: DispatchRecord) -> DispatchRecordModel:
        return DispatchRecordModel(
            recipient_id=record.recipient_id,
            kind=record.kind,
            module=record.module,
            event_type=record.event_type,
            scope_type=record.scope_type,
            scope_id=record.scope_id,
            project_id=record.project_id,
            actor_id=record.actor_id,
            fingerprint=record.fingerprint,
            route=record.route,
            title=record.title,
            summary=record.summary,
            payload_json=record.payload_json,
            created_at=ensure_utc_naive(record.created_at) or now_utc_naive(),
            dispatched_at=ensure_utc_naive(record.dispatched_at),
            locked_until=ensure_utc_naive(record.locked_until),
            attempt_count=record.attempt_count or 0,
            last_error=truncate_error(record.last_error),
        )

    @staticmethod
    def _to_entity(model: DispatchRecordModel) -> DispatchRecord:
        return DispatchRecord(
            id=model.id,
            recipient_id=model.recipient_id,
            kind=model.kind,
            payload_json=model.payload_json,
            created_at=ensure_utc(model.created_at),
            module=model.module,
            event_type=model.event_type,
            scope_type=model.scope_type,
            scope_id=model.scope_id,
            project_id=model.project_id,
            actor_id=model.actor_id,
            fingerprint=model.fingerprint,
            route=model.route,
            title=model.title,
            summary=model.summary,
            dispatched_at=ensure_utc(model.dispatched_at),
            locked_until=ensure_utc(model.locked_until),
            attempt_count=model.attempt_count or 0,
            last_error=model.last_error,
        )


__all__ = ["DispatchRecordRepository", "truncate_error"]
