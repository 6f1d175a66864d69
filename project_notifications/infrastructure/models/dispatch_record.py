"""SQLAlchemy model for the notification outbox."""

from sqlalchemy import Column, DateTime, Enum, Index, Integer, String, Text

from project_notifications.domain.entities import NotificationKind
from project_notifications.infrastructure.database import Base
from project_notifications.utils import now_utc_naive

ERROR_MAX_LENGTH = 2000


class DispatchRecordModel(Base):
    """Durable intent to create one notification for one recipient."""

    __tablename__ = "notification_dispatches"
    __table_args__ = (
        Index(
            "ix_notification_dispatches_pending",
            "dispatched_at",
            "locked_until",
            "created_at",
        ),
        Index("ix_notification_dispatches_project_dispatched", "project_id", "dispatched_at"),
        Index(
            "ix_notification_dispatches_module_event_dispatched",
            "module",
            "event_type",
            "dispatched_at",
        ),
    )

    id = Column(Integer, primary_key=True, index=True)
    recipient_id = Column(String(450), nullable=False, index=True)
    kind = Column(
        Enum(NotificationKind, native_enum=False, length=64, values_callable=lambda kinds: [k.value for k in kinds]),
        nullable=False,
    )
    module = Column(String(64), nullable=True)
    event_type = Column(String(128), nullable=True)
    scope_type = Column(String(64), nullable=True)
    scope_id = Column(String(128), nullable=True)
    project_id = Column(Integer, nullable=True)
    actor_id = Column(String(450), nullable=True)
    fingerprint = Column(String(128), nullable=True, index=True)
    route = Column(String(2048), nullable=True)
    title = Column(String(200), nullable=True)
    summary = Column(String(2000), nullable=True)
    payload_json = Column(Text, nullable=False)
    created_at = Column(DateTime(), nullable=False, default=now_utc_naive)
    dispatched_at = Column(DateTime(), nullable=True)
    locked_until = Column(DateTime(), nullable=True)
    attempt_count = Column(Integer, nullable=False, default=0)
    last_error = Column(String(ERROR_MAX_LENGTH), nullable=True)


__all__ = ["DispatchRecordModel", "ERROR_MAX_LENGTH"]
