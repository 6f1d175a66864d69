"""Kinds of notifications raised by the feature modules."""

from __future__ import annotations

from enum import Enum


class NotificationKind(str, Enum):
    """Event categories recipients can opt in to or out of."""

    REMARK_CREATED = "remark_created"
    MENTIONED_IN_REMARK = "mentioned_in_remark"
    PLAN_SUBMITTED = "plan_submitted"
    PLAN_APPROVED = "plan_approved"
    PLAN_REJECTED = "plan_rejected"
    STAGE_STATUS_CHANGED = "stage_status_changed"
    PROJECT_ASSIGNMENT_CHANGED = "project_assignment_changed"
    DOCUMENT_PUBLISHED = "document_published"
    DOCUMENT_REPLACED = "document_replaced"
    DOCUMENT_ARCHIVED = "document_archived"
    DOCUMENT_RESTORED = "document_restored"
    DOCUMENT_DELETED = "document_deleted"
    ACTIVITY_DELETE_REQUESTED = "activity_delete_requested"
    ACTIVITY_DELETE_APPROVED = "activity_delete_approved"
    ACTIVITY_DELETE_REJECTED = "activity_delete_rejected"
    TRAINING_DELETE_REQUESTED = "training_delete_requested"
    TRAINING_DELETE_APPROVED = "training_delete_approved"
    TRAINING_DELETE_REJECTED = "training_delete_rejected"

    @classmethod
    def coerce(cls, value: "NotificationKind | str") -> "NotificationKind":
        """Return the member for ``value`` or raise ``ValueError``."""

        if isinstance(value, cls):
            return value
        normalized = str(value or "").strip().lower()
        try:
            return cls(normalized)
        except ValueError:
            msg = f"Unknown notification kind '{value}'"
            raise ValueError(msg) from None


# Kinds whose opt-out predates explicit preferences.
GRANDFATHERED_OPT_OUT_KINDS: frozenset[NotificationKind] = frozenset(
    {
        NotificationKind.REMARK_CREATED,
        NotificationKind.MENTIONED_IN_REMARK,
    }
)


__all__ = ["NotificationKind", "GRANDFATHERED_OPT_OUT_KINDS"]
