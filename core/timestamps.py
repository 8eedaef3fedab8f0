"""
core/timestamps.py -- UTC timestamp helpers shared by every store.

Stores persist timestamps as fixed-width ISO 8601 strings in UTC with
microsecond precision ("2026-01-15T00:00:00.000000+00:00"). Fixed width keeps
lexicographic order equal to chronological order, so range filters and
expiry checks can be evaluated by plain string comparison in SQL on any
backend.
"""

from __future__ import annotations

from datetime import datetime, timezone


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def to_iso(value: datetime) -> str:
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat(timespec="microseconds")


def from_iso(value: str | None) -> datetime | None:
    if not value:
        return None
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def now_iso() -> str:
    return to_iso(utcnow())
