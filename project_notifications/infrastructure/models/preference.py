"""SQLAlchemy models for recipient notification switches."""

from sqlalchemy import Boolean, Column, Enum, Integer, String

from project_notifications.domain.entities import NotificationKind
from project_notifications.infrastructure.database import Base


def _kind_column() -> Column:
    return Column(
        Enum(NotificationKind, native_enum=False, length=64, values_callable=lambda kinds: [k.value for k in kinds]),
        primary_key=True,
    )


class NotificationPreferenceModel(Base):
    """Explicit per-kind allow/deny chosen by a recipient."""

    __tablename__ = "notification_preferences"

    recipient_id = Column(String(450), primary_key=True)
    kind = _kind_column()
    allow = Column(Boolean, nullable=False)


class ProjectMuteModel(Base):
    """Project a recipient no longer wants to hear about."""

    __tablename__ = "notification_project_mutes"

    recipient_id = Column(String(450), primary_key=True)
    project_id = Column(Integer, primary_key=True)


class LegacyOptOutModel(Base):
    """Opt-out marker kept from before explicit preferences existed."""

    __tablename__ = "notification_legacy_opt_outs"

    recipient_id = Column(String(450), primary_key=True)
    kind = _kind_column()


__all__ = ["LegacyOptOutModel", "NotificationPreferenceModel", "ProjectMuteModel"]
