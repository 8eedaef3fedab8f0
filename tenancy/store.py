"""
tenancy/store.py -- SQLAlchemy Core persistence for sections, organizations and memberships.

Pattern: Repository + Data Mapper, same as auth/store.py.

Scoping contract:
  Every list method and every single-row get takes a scope Predicate as a
  required positional argument, and list methods also take a typed query
  object. The two are combined with `&` before any SQL is built, and the
  same combined predicate drives both the page and the total, so `total`
  always matches what the caller is allowed to see.

  Writes (update, delete, membership changes) take a bare id. Routes must
  fetch the row through the scope predicate first and 404 on a miss.

User ids in membership tables are logical references into auth's users
table; this store does not own users.

Layer rule: no imports from api/ or audit/. core/ is allowed.
"""

from __future__ import annotations

import json
from collections.abc import Iterable
from dataclasses import dataclass

from sqlalchemy import (
    Column,
    ForeignKey,
    Integer,
    MetaData,
    String,
    Table,
    Text,
    UniqueConstraint,
    func,
    or_,
    select,
)
from sqlalchemy.engine import Engine

from auth.store import make_engine
from core.predicates import MATCH_ALL, Predicate, all_of
from core.timestamps import from_iso, now_iso
from tenancy.models import (
    ARCHIVED,
    Organization,
    OrganizationMember,
    Section,
    SectionMember,
    SectionStats,
)

# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------

metadata = MetaData()

sections = Table(
    "sections",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("number", Integer, nullable=False, unique=True),
    Column("name", String(255), nullable=False, server_default=""),
    Column("created_at", String(32), nullable=False),
)

organizations = Table(
    "organizations",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("name", String(255), nullable=False),
    Column("inn", String(12), unique=True),  # NULLs are distinct; unset INNs never collide
    Column("status", String(20), nullable=False, server_default="active"),
    Column("section_id", ForeignKey("sections.id"), index=True),
    Column("created_at", String(32), nullable=False),
)

section_members = Table(
    "section_members",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("section_id", ForeignKey("sections.id", ondelete="CASCADE"), nullable=False),
    Column("user_id", Integer, nullable=False, index=True),
    Column("role", String(20), nullable=False),
    UniqueConstraint("section_id", "user_id", name="uq_section_member"),
)

organization_members = Table(
    "organization_members",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("organization_id", ForeignKey("organizations.id", ondelete="CASCADE"), nullable=False),
    Column("user_id", Integer, nullable=False, index=True),
    Column("role", String(20), nullable=False, server_default="client"),
    UniqueConstraint("organization_id", "user_id", name="uq_organization_member"),
)

section_stats = Table(
    "section_stats",
    metadata,
    Column("section_id", ForeignKey("sections.id", ondelete="CASCADE"), primary_key=True),
    Column("organizations_by_status", Text, nullable=False),  # JSON object
    Column("member_count", Integer, nullable=False),
    Column("computed_at", String(32), nullable=False),
)


# ---------------------------------------------------------------------------
# Query objects -- typed caller filters, each yields a Predicate
# ---------------------------------------------------------------------------


def _escape_like(value: str) -> str:
    return value.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")


@dataclass(frozen=True)
class SectionQuery:
    search: str | None = None

    def predicate(self) -> Predicate:
        if not self.search:
            return MATCH_ALL
        term = self.search.strip()
        matches = [sections.c.name.ilike(f"%{_escape_like(term)}%", escape="\\")]
        if term.isdigit():
            matches.append(sections.c.number == int(term))
        return Predicate(or_(*matches))


@dataclass(frozen=True)
class OrganizationQuery:
    search: str | None = None
    status: str | None = None
    section_id: int | None = None

    def predicate(self) -> Predicate:
        parts: list[Predicate] = []
        if self.search:
            pattern = f"%{_escape_like(self.search.strip())}%"
            parts.append(
                Predicate(
                    or_(
                        organizations.c.name.ilike(pattern, escape="\\"),
                        organizations.c.inn.ilike(pattern, escape="\\"),
                    )
                )
            )
        if self.status:
            parts.append(Predicate(organizations.c.status == self.status))
        if self.section_id is not None:
            parts.append(Predicate(organizations.c.section_id == self.section_id))
        return all_of(*parts)


# ---------------------------------------------------------------------------
# Repository
# ---------------------------------------------------------------------------


class TenancyStore:
    def __init__(self, db_url: str) -> None:
        self.engine: Engine = make_engine(db_url)
        metadata.create_all(self.engine)

    # ------------------------------------------------------------------
    # Sections
    # ------------------------------------------------------------------

    def create_section(self, section: Section) -> int:
        """Insert a section. Raises IntegrityError on a duplicate number."""
        with self.engine.connect() as conn:
            result = conn.execute(
                sections.insert().values(number=section.number, name=section.name, created_at=now_iso())
            )
            conn.commit()
            return result.inserted_primary_key[0]

    def list_sections(
        self, scope: Predicate, query: SectionQuery, page: int = 1, limit: int = 50
    ) -> tuple[list[Section], int]:
        where = (scope & query.predicate()).clause
        stmt = (
            select(sections, _section_member_count(), _section_organization_count())
            .where(where)
            .order_by(sections.c.number)
            .offset((page - 1) * limit)
            .limit(limit)
        )
        with self.engine.connect() as conn:
            rows = conn.execute(stmt).fetchall()
            total = conn.execute(select(func.count()).select_from(sections).where(where)).scalar() or 0
        return [_row_to_section(r) for r in rows], total

    def get_section(self, section_id: int, scope: Predicate) -> Section | None:
        """Fetch one section through the scope. None for both absent and out of scope."""
        stmt = select(sections, _section_member_count(), _section_organization_count()).where(
            ((Predicate(sections.c.id == section_id)) & scope).clause
        )
        with self.engine.connect() as conn:
            row = conn.execute(stmt).fetchone()
        return _row_to_section(row) if row is not None else None

    def update_section(self, section_id: int, **fields) -> bool:
        """Update number and/or name. Raises IntegrityError on a duplicate number."""
        if not fields:
            return True
        with self.engine.connect() as conn:
            result = conn.execute(sections.update().where(sections.c.id == section_id).values(**fields))
            conn.commit()
        return result.rowcount > 0

    def delete_section(self, section_id: int) -> bool:
        """Delete a section and its memberships. Caller checks for attached organizations first."""
        with self.engine.begin() as conn:
            conn.execute(section_members.delete().where(section_members.c.section_id == section_id))
            conn.execute(section_stats.delete().where(section_stats.c.section_id == section_id))
            result = conn.execute(sections.delete().where(sections.c.id == section_id))
        return result.rowcount > 0

    def count_section_organizations(self, section_id: int) -> int:
        with self.engine.connect() as conn:
            return (
                conn.execute(
                    select(func.count()).select_from(organizations).where(organizations.c.section_id == section_id)
                ).scalar()
                or 0
            )

    def list_section_organizations(self, section_id: int, include_archived: bool = False) -> list[Organization]:
        stmt = organizations.select().where(organizations.c.section_id == section_id)
        if not include_archived:
            stmt = stmt.where(organizations.c.status != ARCHIVED)
        with self.engine.connect() as conn:
            rows = conn.execute(stmt.order_by(organizations.c.name)).fetchall()
        return [_row_to_organization(r) for r in rows]

    def list_section_members(self, section_id: int) -> list[SectionMember]:
        with self.engine.connect() as conn:
            rows = conn.execute(
                section_members.select()
                .where(section_members.c.section_id == section_id)
                .order_by(section_members.c.id)
            ).fetchall()
        return [_row_to_section_member(r) for r in rows]

    def add_section_member(self, member: SectionMember) -> int:
        """Raises IntegrityError if the user is already a member."""
        with self.engine.connect() as conn:
            result = conn.execute(
                section_members.insert().values(
                    section_id=member.section_id, user_id=member.user_id, role=member.role
                )
            )
            conn.commit()
            return result.inserted_primary_key[0]

    def remove_section_member(self, section_id: int, user_id: int) -> bool:
        with self.engine.connect() as conn:
            result = conn.execute(
                section_members.delete().where(
                    (section_members.c.section_id == section_id) & (section_members.c.user_id == user_id)
                )
            )
            conn.commit()
        return result.rowcount > 0

    # ------------------------------------------------------------------
    # Organizations
    # ------------------------------------------------------------------

    def create_organization(self, org: Organization) -> int:
        """Insert an organization. Raises IntegrityError on a duplicate INN."""
        with self.engine.connect() as conn:
            result = conn.execute(
                organizations.insert().values(
                    name=org.name,
                    inn=org.inn,
                    status=org.status,
                    section_id=org.section_id,
                    created_at=now_iso(),
                )
            )
            conn.commit()
            return result.inserted_primary_key[0]

    def list_organizations(
        self, scope: Predicate, query: OrganizationQuery, page: int = 1, limit: int = 50
    ) -> tuple[list[Organization], int]:
        where = (scope & query.predicate()).clause
        stmt = (
            organizations.select()
            .where(where)
            .order_by(organizations.c.name, organizations.c.id)
            .offset((page - 1) * limit)
            .limit(limit)
        )
        with self.engine.connect() as conn:
            rows = conn.execute(stmt).fetchall()
            total = conn.execute(select(func.count()).select_from(organizations).where(where)).scalar() or 0
        return [_row_to_organization(r) for r in rows], total

    def get_organization(self, org_id: int, scope: Predicate) -> Organization | None:
        """Fetch one organization through the scope. None for both absent and out of scope."""
        stmt = organizations.select().where((Predicate(organizations.c.id == org_id) & scope).clause)
        with self.engine.connect() as conn:
            row = conn.execute(stmt).fetchone()
        return _row_to_organization(row) if row is not None else None

    def section_exists(self, section_id: int) -> bool:
        with self.engine.connect() as conn:
            return conn.execute(select(sections.c.id).where(sections.c.id == section_id)).fetchone() is not None

    def update_organization(self, org_id: int, **fields) -> bool:
        """Update name, inn, status and/or section_id. Raises IntegrityError on a duplicate INN."""
        if not fields:
            return True
        with self.engine.connect() as conn:
            result = conn.execute(organizations.update().where(organizations.c.id == org_id).values(**fields))
            conn.commit()
        return result.rowcount > 0

    def archive_organization(self, org_id: int) -> bool:
        return self.update_organization(org_id, status=ARCHIVED)

    def list_organization_members(self, org_id: int) -> list[OrganizationMember]:
        with self.engine.connect() as conn:
            rows = conn.execute(
                organization_members.select()
                .where(organization_members.c.organization_id == org_id)
                .order_by(organization_members.c.id)
            ).fetchall()
        return [_row_to_organization_member(r) for r in rows]

    def add_organization_member(self, member: OrganizationMember) -> int:
        """Raises IntegrityError if the user is already a member."""
        with self.engine.connect() as conn:
            result = conn.execute(
                organization_members.insert().values(
                    organization_id=member.organization_id, user_id=member.user_id, role=member.role
                )
            )
            conn.commit()
            return result.inserted_primary_key[0]

    def remove_organization_member(self, org_id: int, user_id: int) -> bool:
        with self.engine.connect() as conn:
            result = conn.execute(
                organization_members.delete().where(
                    (organization_members.c.organization_id == org_id) & (organization_members.c.user_id == user_id)
                )
            )
            conn.commit()
        return result.rowcount > 0

    def organizations_for_user(self, user_id: int) -> list[Organization]:
        """Organizations the user is a direct member of."""
        stmt = (
            organizations.select()
            .where(
                organizations.c.id.in_(
                    select(organization_members.c.organization_id).where(organization_members.c.user_id == user_id)
                )
            )
            .order_by(organizations.c.name)
        )
        with self.engine.connect() as conn:
            return [_row_to_organization(r) for r in conn.execute(stmt).fetchall()]

    def remove_user_memberships(self, user_id: int) -> None:
        """Drop every section and organization membership of a user (hard delete)."""
        with self.engine.begin() as conn:
            conn.execute(section_members.delete().where(section_members.c.user_id == user_id))
            conn.execute(organization_members.delete().where(organization_members.c.user_id == user_id))

    # ------------------------------------------------------------------
    # Aggregates
    # ------------------------------------------------------------------

    def count_organizations_by_status(self, scope: Predicate, exclude: Iterable[str] = ()) -> dict[str, int]:
        where = scope.clause
        excluded = list(exclude)
        if excluded:
            where = (scope & Predicate(organizations.c.status.not_in(excluded))).clause
        stmt = (
            select(organizations.c.status, func.count().label("n"))
            .where(where)
            .group_by(organizations.c.status)
            .order_by(organizations.c.status)
        )
        with self.engine.connect() as conn:
            return {r.status: r.n for r in conn.execute(stmt)}

    def count_sections(self, scope: Predicate) -> int:
        with self.engine.connect() as conn:
            return conn.execute(select(func.count()).select_from(sections).where(scope.clause)).scalar() or 0

    def recompute_section_stats(self, section_id: int) -> SectionStats | None:
        """Rebuild the statistics snapshot for one section. None if the section is gone."""
        with self.engine.begin() as conn:
            if conn.execute(select(sections.c.id).where(sections.c.id == section_id)).fetchone() is None:
                return None
            by_status = {
                r.status: r.n
                for r in conn.execute(
                    select(organizations.c.status, func.count().label("n"))
                    .where(organizations.c.section_id == section_id)
                    .group_by(organizations.c.status)
                )
            }
            members = (
                conn.execute(
                    select(func.count()).select_from(section_members).where(section_members.c.section_id == section_id)
                ).scalar()
                or 0
            )
            computed_at = now_iso()
            values = {
                "organizations_by_status": json.dumps(by_status, sort_keys=True),
                "member_count": members,
                "computed_at": computed_at,
            }
            updated = conn.execute(
                section_stats.update().where(section_stats.c.section_id == section_id).values(**values)
            )
            if updated.rowcount == 0:
                conn.execute(section_stats.insert().values(section_id=section_id, **values))
        return SectionStats(
            section_id=section_id,
            organizations_by_status=by_status,
            member_count=members,
            computed_at=from_iso(computed_at),
        )

    def get_section_stats(self, section_id: int) -> SectionStats | None:
        with self.engine.connect() as conn:
            row = conn.execute(section_stats.select().where(section_stats.c.section_id == section_id)).fetchone()
        if row is None:
            return None
        return SectionStats(
            section_id=row.section_id,
            organizations_by_status=json.loads(row.organizations_by_status),
            member_count=row.member_count,
            computed_at=from_iso(row.computed_at),
        )

    def close(self) -> None:
        self.engine.dispose()


# ---------------------------------------------------------------------------
# Column fragments
# ---------------------------------------------------------------------------


def _section_member_count():
    return (
        select(func.count())
        .select_from(section_members)
        .where(section_members.c.section_id == sections.c.id)
        .correlate(sections)
        .scalar_subquery()
        .label("member_count")
    )


def _section_organization_count():
    return (
        select(func.count())
        .select_from(organizations)
        .where(organizations.c.section_id == sections.c.id)
        .correlate(sections)
        .scalar_subquery()
        .label("organization_count")
    )


# ---------------------------------------------------------------------------
# Row mappers
# ---------------------------------------------------------------------------


def _row_to_section(row) -> Section:
    return Section(
        id=row.id,
        number=row.number,
        name=row.name,
        created_at=from_iso(row.created_at),
        member_count=row.member_count,
        organization_count=row.organization_count,
    )


def _row_to_organization(row) -> Organization:
    return Organization(
        id=row.id,
        name=row.name,
        inn=row.inn,
        status=row.status,
        section_id=row.section_id,
        created_at=from_iso(row.created_at),
    )


def _row_to_section_member(row) -> SectionMember:
    return SectionMember(id=row.id, section_id=row.section_id, user_id=row.user_id, role=row.role)


def _row_to_organization_member(row) -> OrganizationMember:
    return OrganizationMember(
        id=row.id, organization_id=row.organization_id, user_id=row.user_id, role=row.role
    )
