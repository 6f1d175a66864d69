"""Helpers for working with UTC datetimes."""

from __future__ import annotations

from datetime import datetime, timezone


def utc_now() -> datetime:
    """Return the current time as an aware UTC datetime."""

    return datetime.now(tz=timezone.utc)


def now_utc_naive() -> datetime:
    """Return the current UTC time without attaching ``tzinfo``."""

    return utc_now().replace(tzinfo=None)


def ensure_utc(value: datetime | None) -> datetime | None:
    """Normalize ``value`` so it is an aware datetime expressed in UTC.

    Naive values are assumed to already be UTC, which is how every timestamp
    column of this service is stored.
    """

    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def ensure_utc_naive(value: datetime | None) -> datetime | None:
    """Return ``value`` converted to UTC but without ``tzinfo``.

    The ``DATETIME`` columns are declared without timezone so that SQLite and
    PostgreSQL compare them the same way. This helper keeps aware datetimes in
    the domain layer while storing the naive UTC representation.
    """

    normalized = ensure_utc(value)
    if normalized is None:
        return None
    return normalized.replace(tzinfo=None)
