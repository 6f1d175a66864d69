"""Turn leased outbox rows into recipient-visible notifications.

One call to :meth:`NotificationDispatcher.process_batch` performs a full cycle:

1. select up to ``batch_size`` ready rows, oldest first;
2. lease them (``locked_until`` pushed forward, ``attempt_count`` incremented)
   and commit;
3. resolve every row on its own savepoint: preference skip, fingerprint
   duplicate, new notification, or a backoff when something failed;
4. commit all outcomes together;
5. hand the new notifications to the delivery sink.

Rows are coordinated only through the lease columns, so any number of
dispatchers may run against the same database. A lease that expires while a
slow worker still holds it can be taken over. Every write after the lease is
conditioned on the row still being pending with the ``locked_until`` value
this worker wrote, so the slower worker discards its work instead of
reopening or re-stamping a finished row. The unique
``(recipient_id, fingerprint)`` constraint on notifications backs this up.
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Sequence
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import TYPE_CHECKING, Protocol

from sqlalchemy.exc import IntegrityError, OperationalError
from sqlalchemy.orm import Session

from project_notifications.domain.entities import DispatchRecord, Notification
from project_notifications.infrastructure.repositories import (
    DispatchRecordRepository,
    NotificationRepository,
)
from project_notifications.utils import utc_now

from .preferences import NotificationPreferenceFilter

if TYPE_CHECKING:
    from project_notifications.config import Settings

logger = logging.getLogger(__name__)

RETRY_SCHEDULE: tuple[timedelta, ...] = (
    timedelta(seconds=5),
    timedelta(seconds=15),
    timedelta(minutes=1),
    timedelta(minutes=5),
)
RETRY_CEILING = timedelta(minutes=15)


def retry_delay(attempt_count: int) -> timedelta:
    """Return the backoff applied after the ``attempt_count``-th failure."""

    if attempt_count <= 1:
        return RETRY_SCHEDULE[0]
    if attempt_count <= len(RETRY_SCHEDULE):
        return RETRY_SCHEDULE[attempt_count - 1]
    return RETRY_CEILING


class DeliverySink(Protocol):
    """Downstream channel receiving freshly created notifications."""

    def deliver(self, notifications: Sequence[Notification]) -> None: ...


class DispatchOutcome(str, Enum):
    DELIVERED = "delivered"
    SKIPPED_PREFERENCE = "skipped_preference"
    SKIPPED_DUPLICATE = "skipped_duplicate"
    RETRY_SCHEDULED = "retry_scheduled"
    LEASE_LOST = "lease_lost"


class _LeaseLost(Exception):
    """The row was re-leased or finished by another worker."""


@dataclass(frozen=True)
class DispatcherOptions:
    """Tuning knobs of the dispatch loop."""

    batch_size: int = 20
    lease_duration: timedelta = timedelta(minutes=1)
    idle_delay: timedelta = timedelta(seconds=5)
    error_delay: timedelta = timedelta(seconds=15)

    def __post_init__(self) -> None:
        if self.batch_size <= 0:
            raise ValueError("batch_size must be positive")
        if self.lease_duration <= timedelta(0):
            raise ValueError("lease_duration must be positive")

    @classmethod
    def from_settings(cls, settings: "Settings") -> "DispatcherOptions":
        return cls(
            batch_size=settings.batch_size,
            lease_duration=timedelta(seconds=settings.lease_duration_seconds),
            idle_delay=timedelta(seconds=settings.idle_delay_seconds),
            error_delay=timedelta(seconds=settings.error_delay_seconds),
        )


@dataclass
class BatchResult:
    """Summary of one dispatch cycle."""

    leased: int = 0
    outcomes: dict[int, DispatchOutcome] = field(default_factory=dict)
    delivered: list[Notification] = field(default_factory=list)

    @property
    def did_work(self) -> bool:
        return self.leased > 0

    def count(self, outcome: DispatchOutcome) -> int:
        return sum(1 for value in self.outcomes.values() if value is outcome)


class NotificationDispatcher:
    """Process the notification outbox in leased batches."""

    def __init__(
        self,
        session_factory: Callable[[], Session],
        *,
        options: DispatcherOptions | None = None,
        delivery_sink: DeliverySink | None = None,
        preference_filter_factory: Callable[[Session], NotificationPreferenceFilter] | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        if delivery_sink is None:
            from project_notifications.infrastructure.notifications.delivery import NullDeliverySink

            delivery_sink = NullDeliverySink()
        self._session_factory = session_factory
        self.options = options or DispatcherOptions()
        self._delivery_sink = delivery_sink
        self._preference_filter_factory = (
            preference_filter_factory or NotificationPreferenceFilter.for_session
        )
        self._clock = clock or utc_now
        self.last_result = BatchResult()

    def process_batch(self) -> bool:
        """Run one dispatch cycle; return ``True`` when rows were leased.

        Exceptions raised here are batch-level failures (the database is
        unreachable, the final commit failed). Rows leased before the failure
        become selectable again once their lease expires.
        """

        result = BatchResult()
        self.last_result = result

        session = self._session_factory()
        try:
            now = self._clock()
            records = DispatchRecordRepository(session)
            leased = records.lease_ready(
                now=now,
                limit=self.options.batch_size,
                lease_until=now + self.options.lease_duration,
            )
            if not leased:
                return False

            result.leased = len(leased)
            preference_filter = self._preference_filter_factory(session)
            notifications = NotificationRepository(session)
            created: dict[tuple[str, str], Notification] = {}

            for record in leased:
                outcome = self._process_record(
                    session,
                    record,
                    records=records,
                    notifications=notifications,
                    preference_filter=preference_filter,
                    created=created,
                    result=result,
                )
                result.outcomes[record.id] = outcome

            session.commit()
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

        logger.info(
            "Dispatched notification batch: leased=%d delivered=%d skipped_preference=%d "
            "skipped_duplicate=%d retry_scheduled=%d lease_lost=%d",
            result.leased,
            result.count(DispatchOutcome.DELIVERED),
            result.count(DispatchOutcome.SKIPPED_PREFERENCE),
            result.count(DispatchOutcome.SKIPPED_DUPLICATE),
            result.count(DispatchOutcome.RETRY_SCHEDULED),
            result.count(DispatchOutcome.LEASE_LOST),
        )
        self._deliver(result.delivered)
        return True

    def _process_record(
        self,
        session: Session,
        record: DispatchRecord,
        *,
        records: DispatchRecordRepository,
        notifications: NotificationRepository,
        preference_filter: NotificationPreferenceFilter,
        created: dict[tuple[str, str], Notification],
        result: BatchResult,
    ) -> DispatchOutcome:
        try:
            with session.begin_nested():
                outcome, notification = self._resolve(
                    record,
                    records=records,
                    notifications=notifications,
                    preference_filter=preference_filter,
                    created=created,
                )
        except _LeaseLost:
            return self._lease_lost(record)
        except IntegrityError as exc:
            if not self._is_stored_duplicate(record, notifications):
                return self._schedule_retry(records, record, exc)
            # Another dispatcher committed the same fingerprint after our check.
            if not records.mark_dispatched(
                record.id, at=self._clock(), leased_until=record.locked_until
            ):
                return self._lease_lost(record)
            logger.info(
                "Dispatch %s lost fingerprint race for recipient %s; marked duplicate",
                record.id,
                record.recipient_id,
            )
            return DispatchOutcome.SKIPPED_DUPLICATE
        except OperationalError:
            raise
        except Exception as exc:  # pylint: disable=broad-exception-caught
            return self._schedule_retry(records, record, exc)

        if notification is not None:
            created[(notification.recipient_id, notification.fingerprint or "")] = notification
            result.delivered.append(notification)
        return outcome

    @staticmethod
    def _is_stored_duplicate(record: DispatchRecord, notifications: NotificationRepository) -> bool:
        if not record.fingerprint:
            return False
        existing = notifications.find_by_fingerprint(record.recipient_id, record.fingerprint)
        return existing is not None

    def _resolve(
        self,
        record: DispatchRecord,
        *,
        records: DispatchRecordRepository,
        notifications: NotificationRepository,
        preference_filter: NotificationPreferenceFilter,
        created: dict[tuple[str, str], Notification],
    ) -> tuple[DispatchOutcome, Notification | None]:
        decision = preference_filter.decide(record.kind, record.recipient_id, record.project_id)
        if not decision.allowed:
            self._finish(records, record, at=self._clock())
            logger.debug(
                "Dispatch %s skipped for recipient %s by %s",
                record.id,
                record.recipient_id,
                decision.resolver,
            )
            return DispatchOutcome.SKIPPED_PREFERENCE, None

        if record.fingerprint:
            key = (record.recipient_id, record.fingerprint)
            duplicate = key in created or (
                notifications.find_by_fingerprint(record.recipient_id, record.fingerprint)
                is not None
            )
            if duplicate:
                self._finish(records, record, at=self._clock())
                logger.debug(
                    "Dispatch %s is a duplicate of fingerprint %s for recipient %s",
                    record.id,
                    record.fingerprint,
                    record.recipient_id,
                )
                return DispatchOutcome.SKIPPED_DUPLICATE, None

        dispatched_at = self._clock()
        saved = notifications.add(
            Notification(
                id=None,
                recipient_id=record.recipient_id,
                title=record.title,
                summary=record.summary,
                route=record.route,
                module=record.module,
                event_type=record.event_type,
                scope_type=record.scope_type,
                scope_id=record.scope_id,
                project_id=record.project_id,
                actor_id=record.actor_id,
                fingerprint=record.fingerprint,
                created_at=dispatched_at,
                source_dispatch_id=record.id,
            )
        )
        # Raising here rolls the insert back with the savepoint.
        self._finish(records, record, at=dispatched_at)
        return DispatchOutcome.DELIVERED, saved

    @staticmethod
    def _finish(records: DispatchRecordRepository, record: DispatchRecord, *, at: datetime) -> None:
        if not records.mark_dispatched(record.id, at=at, leased_until=record.locked_until):
            raise _LeaseLost(record.id)

    def _lease_lost(self, record: DispatchRecord) -> DispatchOutcome:
        logger.warning(
            "Dispatch %s for recipient %s was taken over by another worker; result discarded",
            record.id,
            record.recipient_id,
        )
        return DispatchOutcome.LEASE_LOST

    def _schedule_retry(
        self,
        records: DispatchRecordRepository,
        record: DispatchRecord,
        exc: Exception,
    ) -> DispatchOutcome:
        delay = retry_delay(record.attempt_count)
        scheduled = records.schedule_retry(
            record.id,
            retry_at=self._clock() + delay,
            error=str(exc) or exc.__class__.__name__,
            leased_until=record.locked_until,
        )
        if not scheduled:
            return self._lease_lost(record)
        logger.error(
            "Failed to dispatch notification %s on attempt %d; retrying in %s",
            record.id,
            record.attempt_count,
            delay,
            exc_info=exc,
        )
        return DispatchOutcome.RETRY_SCHEDULED

    def _deliver(self, notifications: Sequence[Notification]) -> None:
        if not notifications:
            return
        try:
            self._delivery_sink.deliver(list(notifications))
        except Exception:  # pylint: disable=broad-exception-caught
            logger.exception(
                "Delivery sink failed for %d notification(s); they remain stored",
                len(notifications),
            )


__all__ = [
    "BatchResult",
    "DeliverySink",
    "DispatchOutcome",
    "DispatcherOptions",
    "NotificationDispatcher",
    "RETRY_CEILING",
    "RETRY_SCHEDULE",
    "retry_delay",
]
