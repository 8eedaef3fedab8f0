"""
tenancy/models.py -- Domain dataclasses for the tenancy hierarchy.

A Section contains Organizations. SectionMember links a staff user to a
Section; OrganizationMember links a user (usually a client) directly to an
Organization. These rows are the ground truth the scope resolver reads.

Layer rule: no imports from api/, auth/, or audit/.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime

ORGANIZATION_STATUSES: tuple[str, ...] = ("active", "new", "liquidating", "left", "closed", "not_paying", "archived")

# Statuses treated as "no longer serviced" by dashboard counts.
INACTIVE_ORGANIZATION_STATUSES: tuple[str, ...] = ("left", "closed", "not_paying", "ceased", "archived")

ARCHIVED = "archived"

SECTION_MEMBER_ROLES: tuple[str, ...] = ("manager", "accountant", "auditor")


@dataclass
class Section:
    number: int
    name: str = ""
    id: int | None = None
    created_at: datetime | None = None
    member_count: int = 0
    organization_count: int = 0


@dataclass
class Organization:
    name: str
    inn: str | None = None
    status: str = "active"
    section_id: int | None = None
    id: int | None = None
    created_at: datetime | None = None


@dataclass
class SectionMember:
    section_id: int
    user_id: int
    role: str
    id: int | None = None


@dataclass
class OrganizationMember:
    organization_id: int
    user_id: int
    role: str = "client"
    id: int | None = None


@dataclass
class SectionStats:
    """Derived snapshot, recomputed in the background after mutations."""

    section_id: int
    organizations_by_status: dict[str, int] = field(default_factory=dict)
    member_count: int = 0
    computed_at: datetime | None = None
