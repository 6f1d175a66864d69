"""Read access to recipient notification preferences, mutes and opt-outs."""

from __future__ import annotations

from sqlalchemy import select
from sqlalchemy.orm import Session

from project_notifications.domain.entities import NotificationKind
from project_notifications.infrastructure.models import (
    LegacyOptOutModel,
    NotificationPreferenceModel,
    ProjectMuteModel,
)


class NotificationPreferenceRepository:
    """Answer point lookups against the preference tables.

    The lookup methods never write. The ``set_*`` helpers belong to the
    preference screens and are kept here so both sides share one mapping.
    """

    def __init__(self, session: Session) -> None:
        self.session = session

    def get_preference(self, recipient_id: str, kind: NotificationKind) -> bool | None:
        query = select(NotificationPreferenceModel.allow).where(
            NotificationPreferenceModel.recipient_id == recipient_id,
            NotificationPreferenceModel.kind == kind,
        )
        allow = self.session.scalar(query)
        return None if allow is None else bool(allow)

    def is_project_muted(self, recipient_id: str, project_id: int) -> bool:
        query = select(ProjectMuteModel.project_id).where(
            ProjectMuteModel.recipient_id == recipient_id,
            ProjectMuteModel.project_id == project_id,
        )
        return self.session.scalar(query) is not None

    def has_legacy_opt_out(self, recipient_id: str, kind: NotificationKind) -> bool:
        query = select(LegacyOptOutModel.recipient_id).where(
            LegacyOptOutModel.recipient_id == recipient_id,
            LegacyOptOutModel.kind == kind,
        )
        return self.session.scalar(query) is not None

    def set_preference(self, recipient_id: str, kind: NotificationKind, *, allow: bool) -> None:
        model = self.session.get(NotificationPreferenceModel, (recipient_id, kind))
        if model is None:
            model = NotificationPreferenceModel(recipient_id=recipient_id, kind=kind, allow=allow)
            self.session.add(model)
        else:
            model.allow = allow
        self.session.commit()

    def set_project_mute(self, recipient_id: str, project_id: int, *, muted: bool) -> None:
        model = self.session.get(ProjectMuteModel, (recipient_id, project_id))
        if muted and model is None:
            self.session.add(ProjectMuteModel(recipient_id=recipient_id, project_id=project_id))
        elif not muted and model is not None:
            self.session.delete(model)
        self.session.commit()

    def add_legacy_opt_out(self, recipient_id: str, kind: NotificationKind) -> None:
        if self.session.get(LegacyOptOutModel, (recipient_id, kind)) is None:
            self.session.add(LegacyOptOutModel(recipient_id=recipient_id, kind=kind))
        self.session.commit()


__all__ = ["NotificationPreferenceRepository"]
