"""
tenancy/scope.py -- Scope predicates: which rows of a resource a caller may touch.

scope_filter(resource_type, identity) is the only place that maps role and
membership to row visibility:

  admin                  -> MATCH_ALL
  manager / accountant   -> sections with a SectionMember row for the user;
                            organizations whose section is one of those
  anything else (client) -> organizations with a direct OrganizationMember
                            row for the user; sections -> MATCH_NONE

The result is a Predicate and stores AND it with caller filters (see
core/predicates.py). Tiers narrow monotonically: admin matches everything,
staff see only their sections, clients see only their own organizations and
never any section.

Single-row reads go through the same predicate. A row outside scope is
indistinguishable from a missing row, and routes answer 404 for both.
"""

from __future__ import annotations

from sqlalchemy import select

from auth.models import Identity
from auth.permissions import ACCOUNTANT, ADMIN, MANAGER
from core.predicates import MATCH_ALL, MATCH_NONE, Predicate
from tenancy.store import organization_members, organizations, section_members, sections

SECTION = "section"
ORGANIZATION = "organization"

RESOURCE_TYPES: tuple[str, ...] = (SECTION, ORGANIZATION)


def _member_section_ids(user_id: int):
    return select(section_members.c.section_id).where(section_members.c.user_id == user_id)


def _member_organization_ids(user_id: int):
    return select(organization_members.c.organization_id).where(organization_members.c.user_id == user_id)


def scope_filter(resource_type: str, identity: Identity) -> Predicate:
    """Return the visibility predicate for resource_type under identity.

    Raises ValueError for an unknown resource type rather than defaulting
    to an open predicate.
    """
    if resource_type not in RESOURCE_TYPES:
        raise ValueError(f"Unknown resource type: {resource_type!r}")

    if identity.has_role(ADMIN):
        return MATCH_ALL

    if identity.has_role(MANAGER, ACCOUNTANT):
        if resource_type == SECTION:
            return Predicate(sections.c.id.in_(_member_section_ids(identity.user_id)))
        return Predicate(organizations.c.section_id.in_(_member_section_ids(identity.user_id)))

    if resource_type == SECTION:
        return MATCH_NONE
    return Predicate(organizations.c.id.in_(_member_organization_ids(identity.user_id)))
