"""
audit/models.py -- Audit trail entry and read-side query.

AuditEntry rows are append-only. user_id and entity_id are logical
references: no foreign key, so an entry outlives the user and the entity it
describes.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date, datetime, time, timedelta, timezone
from typing import Any


@dataclass
class AuditEntry:
    action: str
    user_id: int | None = None
    entity: str | None = None
    entity_id: str | None = None
    details: dict[str, Any] = field(default_factory=dict)
    ip_address: str | None = None
    id: int | None = None
    created_at: datetime | None = None


@dataclass(frozen=True)
class AuditQuery:
    """Read-side filters. All set filters are ANDed.

    date_from / date_to are inclusive calendar days in UTC. The range is
    half-open in storage: created_at >= date_from 00:00 and created_at <
    the midnight that follows date_to, so every microsecond of date_to matches.
    """

    entity: str | None = None
    user_id: int | None = None
    date_from: date | None = None
    date_to: date | None = None
    search: str | None = None

    def lower_bound(self) -> datetime | None:
        if self.date_from is None:
            return None
        return datetime.combine(self.date_from, time.min, tzinfo=timezone.utc)

    def upper_bound(self) -> datetime | None:
        """Exclusive end: midnight UTC after date_to."""
        if self.date_to is None:
            return None
        return datetime.combine(self.date_to + timedelta(days=1), time.min, tzinfo=timezone.utc)
