"""Decide whether a recipient may receive a notification."""

from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass
from typing import Protocol

from sqlalchemy.orm import Session

from project_notifications.domain.entities import GRANDFATHERED_OPT_OUT_KINDS, NotificationKind
from project_notifications.infrastructure.repositories import NotificationPreferenceRepository

DEFAULT_RESOLVER = "default_allow"


@dataclass(frozen=True)
class PreferenceQuery:
    """Inputs of a single allow/deny decision."""

    kind: NotificationKind
    recipient_id: str
    project_id: int | None = None


@dataclass(frozen=True)
class PreferenceDecision:
    allowed: bool
    resolver: str


class PreferenceResolver(Protocol):
    """One rule of the preference chain.

    ``resolve`` returns ``None`` when the rule has no opinion so the next rule
    is consulted.
    """

    name: str

    def resolve(self, query: PreferenceQuery) -> bool | None: ...


class ProjectMuteResolver:
    name = "project_mute"

    def __init__(self, repository: NotificationPreferenceRepository) -> None:
        self._repository = repository

    def resolve(self, query: PreferenceQuery) -> bool | None:
        if query.project_id is None:
            return None
        if self._repository.is_project_muted(query.recipient_id, query.project_id):
            return False
        return None


class ExplicitPreferenceResolver:
    name = "explicit_preference"

    def __init__(self, repository: NotificationPreferenceRepository) -> None:
        self._repository = repository

    def resolve(self, query: PreferenceQuery) -> bool | None:
        return self._repository.get_preference(query.recipient_id, query.kind)


class LegacyOptOutResolver:
    name = "legacy_opt_out"

    def __init__(
        self,
        repository: NotificationPreferenceRepository,
        kinds: frozenset[NotificationKind] = GRANDFATHERED_OPT_OUT_KINDS,
    ) -> None:
        self._repository = repository
        self._kinds = kinds

    def resolve(self, query: PreferenceQuery) -> bool | None:
        if query.kind not in self._kinds:
            return None
        if self._repository.has_legacy_opt_out(query.recipient_id, query.kind):
            return False
        return None


def default_resolvers(session: Session) -> list[PreferenceResolver]:
    """Return the standard chain: mute, explicit preference, legacy opt-out."""

    repository = NotificationPreferenceRepository(session)
    return [
        ProjectMuteResolver(repository),
        ExplicitPreferenceResolver(repository),
        LegacyOptOutResolver(repository),
    ]


class NotificationPreferenceFilter:
    """Evaluate an ordered chain of resolvers; the first answer wins.

    When no resolver answers, notifications are allowed.
    """

    def __init__(self, resolvers: Sequence[PreferenceResolver]) -> None:
        self._resolvers = tuple(resolvers)

    @classmethod
    def for_session(cls, session: Session) -> "NotificationPreferenceFilter":
        return cls(default_resolvers(session))

    @property
    def resolver_names(self) -> list[str]:
        return [resolver.name for resolver in self._resolvers]

    def decide(
        self,
        kind: NotificationKind | str,
        recipient_id: str,
        project_id: int | None = None,
    ) -> PreferenceDecision:
        query = PreferenceQuery(
            kind=NotificationKind.coerce(kind),
            recipient_id=recipient_id,
            project_id=project_id,
        )
        for resolver in self._resolvers:
            answer = resolver.resolve(query)
            if answer is not None:
                return PreferenceDecision(allowed=bool(answer), resolver=resolver.name)
        return PreferenceDecision(allowed=True, resolver=DEFAULT_RESOLVER)

    def allows(
        self,
        kind: NotificationKind | str,
        recipient_id: str,
        project_id: int | None = None,
    ) -> bool:
        return self.decide(kind, recipient_id, project_id).allowed


__all__ = [
    "DEFAULT_RESOLVER",
    "ExplicitPreferenceResolver",
    "LegacyOptOutResolver",
    "NotificationPreferenceFilter",
    "PreferenceDecision",
    "PreferenceQuery",
    "PreferenceResolver",
    "ProjectMuteResolver",
    "default_resolvers",
]
