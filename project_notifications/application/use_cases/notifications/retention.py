"""Prune old or excess notifications."""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import TYPE_CHECKING

from sqlalchemy.orm import Session

from project_notifications.infrastructure.repositories import NotificationRepository
from project_notifications.utils import utc_now

if TYPE_CHECKING:
    from project_notifications.config import Settings

logger = logging.getLogger(__name__)

DEFAULT_SWEEP_INTERVAL = timedelta(hours=1)
# Used instead of the sweep interval after a failed sweep.
DEFAULT_RETRY_DELAY = timedelta(minutes=5)


@dataclass(frozen=True)
class RetentionOptions:
    """Retention thresholds; ``None`` or non-positive values disable a rule."""

    sweep_interval: timedelta = DEFAULT_SWEEP_INTERVAL
    max_age: timedelta | None = None
    max_per_user: int | None = None

    @property
    def effective_max_age(self) -> timedelta | None:
        if self.max_age is None or self.max_age <= timedelta(0):
            return None
        return self.max_age

    @property
    def effective_max_per_user(self) -> int | None:
        if self.max_per_user is None or self.max_per_user <= 0:
            return None
        return self.max_per_user

    @property
    def is_enabled(self) -> bool:
        return self.effective_max_age is not None or self.effective_max_per_user is not None

    def sweep_interval_or_default(self) -> timedelta:
        if self.sweep_interval <= timedelta(0):
            return DEFAULT_SWEEP_INTERVAL
        return self.sweep_interval

    @classmethod
    def from_settings(cls, settings: "Settings") -> "RetentionOptions":
        max_age = None
        if settings.retention_max_age_days is not None:
            max_age = timedelta(days=settings.retention_max_age_days)
        return cls(
            sweep_interval=timedelta(seconds=settings.retention_sweep_interval_seconds),
            max_age=max_age,
            max_per_user=settings.retention_max_per_user,
        )


class NotificationRetentionSweeper:
    """Delete notifications past the configured age or per-recipient cap.

    Only the ``notifications`` table is touched; outbox rows are kept as an
    audit trail.
    """

    def __init__(
        self,
        session_factory: Callable[[], Session],
        *,
        options: RetentionOptions | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._session_factory = session_factory
        self.options = options or RetentionOptions()
        self._clock = clock or utc_now

    def run_once(self) -> int:
        """Apply the retention rules once and return the number removed."""

        max_age = self.options.effective_max_age
        max_per_user = self.options.effective_max_per_user
        if max_age is None and max_per_user is None:
            return 0

        session = self._session_factory()
        try:
            repository = NotificationRepository(session)
            removal_ids: list[int] = []
            seen: set[int] = set()

            def _collect(ids: list[int]) -> None:
                for notification_id in ids:
                    if notification_id not in seen:
                        seen.add(notification_id)
                        removal_ids.append(notification_id)

            if max_age is not None:
                cutoff = self._clock() - max_age
                _collect(repository.list_ids_older_than(cutoff))

            if max_per_user is not None:
                for recipient_id in repository.list_overflowing_recipients(max_per_user):
                    _collect(repository.list_ids_beyond_newest(recipient_id, max_per_user))

            if not removal_ids:
                session.rollback()
                return 0

            removed = repository.delete_ids(removal_ids)
            session.commit()
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

        logger.info("Notification retention removed %d notification(s)", removed)
        return removed


__all__ = [
    "DEFAULT_RETRY_DELAY",
    "DEFAULT_SWEEP_INTERVAL",
    "NotificationRetentionSweeper",
    "RetentionOptions",
]
