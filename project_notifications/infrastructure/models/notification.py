"""SQLAlchemy model for persisted notifications."""

from sqlalchemy import Column, DateTime, ForeignKey, Index, Integer, String, UniqueConstraint
from sqlalchemy.orm import relationship

from project_notifications.infrastructure.database import Base
from project_notifications.utils import now_utc_naive


class NotificationModel(Base):
    """Database representation for recipient-visible notifications."""

    __tablename__ = "notifications"
    __table_args__ = (
        UniqueConstraint(
            "recipient_id",
            "fingerprint",
            name="uq_notifications_recipient_fingerprint",
        ),
        Index("ix_notifications_recipient_created", "recipient_id", "created_at"),
    )

    id = Column(Integer, primary_key=True, index=True)
    recipient_id = Column(String(450), nullable=False)
    module = Column(String(64), nullable=True)
    event_type = Column(String(128), nullable=True)
    scope_type = Column(String(64), nullable=True)
    scope_id = Column(String(128), nullable=True)
    project_id = Column(Integer, nullable=True, index=True)
    actor_id = Column(String(450), nullable=True)
    fingerprint = Column(String(128), nullable=True)
    route = Column(String(2048), nullable=True)
    title = Column(String(200), nullable=True)
    summary = Column(String(2000), nullable=True)
    created_at = Column(DateTime(), nullable=False, default=now_utc_naive)
    seen_at = Column(DateTime(), nullable=True)
    read_at = Column(DateTime(), nullable=True)
    source_dispatch_id = Column(
        Integer,
        ForeignKey("notification_dispatches.id"),
        nullable=True,
        index=True,
    )

    source_dispatch = relationship("DispatchRecordModel", lazy="select")


__all__ = ["NotificationModel"]
