"""
api/routes/v1/organizations.py -- Organization CRUD and client membership.

Routes:
  GET    /api/v1/organizations                         -- organization:view, scoped list
  POST   /api/v1/organizations                         -- organization:create
  GET    /api/v1/organizations/{id}                    -- organization:view, scoped
  PUT    /api/v1/organizations/{id}                    -- organization:edit, scoped
  DELETE /api/v1/organizations/{id}                    -- organization:delete, scoped; archives
  POST   /api/v1/organizations/{id}/members            -- organization:edit, scoped
  DELETE /api/v1/organizations/{id}/members/{user_id}  -- organization:edit, scoped

Every route runs its permission guard first, then resolves the organization
through scope_filter(). Out-of-scope and missing organizations both yield
the same 404.
"""

from __future__ import annotations

from fastapi import APIRouter, Depends, Query, Request
from sqlalchemy.exc import IntegrityError

from api.models import (
    MemberResponse,
    MessageResponse,
    OrganizationCreate,
    OrganizationDetailResponse,
    OrganizationListResponse,
    OrganizationMemberAdd,
    OrganizationResponse,
    OrganizationUpdate,
    SectionResponse,
)
from api.pagination import Page, get_page
from api.tasks import schedule_section_stats
from auth.dependencies import client_ip, require_permission
from auth.models import Identity
from auth.permissions import has_permission
from auth.store import UserStore
from core.errors import AuthorizationError, ConflictError, NotFoundError
from core.predicates import MATCH_ALL
from tenancy.models import Organization, OrganizationMember, Section
from tenancy.scope import ORGANIZATION, SECTION, scope_filter
from tenancy.store import OrganizationQuery, TenancyStore

router = APIRouter()

_NOT_FOUND = "Organization not found."


def organization_to_response(org: Organization) -> OrganizationResponse:
    return OrganizationResponse(
        id=org.id,
        name=org.name,
        inn=org.inn,
        status=org.status,
        section_id=org.section_id,
        created_at=org.created_at,
    )


def section_to_response(section: Section) -> SectionResponse:
    return SectionResponse(
        id=section.id,
        number=section.number,
        name=section.name,
        member_count=section.member_count,
        organization_count=section.organization_count,
        created_at=section.created_at,
    )


def members_to_response(user_store: UserStore, members) -> list[MemberResponse]:
    users = user_store.get_users_by_ids(m.user_id for m in members)
    out = []
    for m in members:
        user = users.get(m.user_id)
        out.append(
            MemberResponse(
                user_id=m.user_id,
                role=m.role,
                email=user.email if user else None,
                first_name=user.first_name if user else None,
                last_name=user.last_name if user else None,
            )
        )
    return out


def _scoped_organization(request: Request, org_id: int, identity: Identity) -> Organization:
    tenancy: TenancyStore = request.app.state.tenancy_store
    org = tenancy.get_organization(org_id, scope_filter(ORGANIZATION, identity))
    if org is None:
        raise NotFoundError(_NOT_FOUND)
    return org


def _require_visible_section(request: Request, section_id: int | None, identity: Identity) -> None:
    if section_id is None:
        return
    tenancy: TenancyStore = request.app.state.tenancy_store
    if tenancy.get_section(section_id, scope_filter(SECTION, identity)) is None:
        raise NotFoundError("Section not found.")


@router.get("/organizations", response_model=OrganizationListResponse)
def list_organizations(
    request: Request,
    search: str | None = Query(None, max_length=100),
    status: str | None = Query(None, max_length=20),
    section_id: int | None = Query(None, alias="sectionId"),
    paging: Page = Depends(get_page),
    identity: Identity = Depends(require_permission("organization", "view")),
) -> OrganizationListResponse:
    tenancy: TenancyStore = request.app.state.tenancy_store
    query = OrganizationQuery(search=search, status=status, section_id=section_id)
    orgs, total = tenancy.list_organizations(
        scope_filter(ORGANIZATION, identity), query, page=paging.page, limit=paging.limit
    )
    return OrganizationListResponse(
        organizations=[organization_to_response(o) for o in orgs],
        total=total,
        page=paging.page,
        limit=paging.limit,
    )


@router.post("/organizations", response_model=OrganizationResponse, status_code=201)
def create_organization(
    request: Request,
    body: OrganizationCreate,
    identity: Identity = Depends(require_permission("organization", "create")),
) -> OrganizationResponse:
    tenancy: TenancyStore = request.app.state.tenancy_store
    _require_visible_section(request, body.section_id, identity)
    org = Organization(name=body.name, inn=body.inn, status=body.status, section_id=body.section_id)
    try:
        org_id = tenancy.create_organization(org)
    except IntegrityError as exc:
        raise ConflictError("An organization with this INN already exists.") from exc

    request.app.state.audit.log(
        "organization_created",
        actor_id=identity.user_id,
        entity="organization",
        entity_id=org_id,
        details={"name": org.name, "inn": org.inn, "sectionId": org.section_id},
        ip_address=client_ip(request),
    )
    schedule_section_stats(request, org.section_id)
    return organization_to_response(tenancy.get_organization(org_id, MATCH_ALL))


@router.get("/organizations/{org_id}", response_model=OrganizationDetailResponse)
def get_organization(
    request: Request,
    org_id: int,
    identity: Identity = Depends(require_permission("organization", "view")),
) -> OrganizationDetailResponse:
    tenancy: TenancyStore = request.app.state.tenancy_store
    org = _scoped_organization(request, org_id, identity)
    section = None
    if org.section_id is not None:
        # Shown as context of a visible organization, even to clients.
        section = tenancy.get_section(org.section_id, MATCH_ALL)
    members = tenancy.list_organization_members(org.id)
    return OrganizationDetailResponse(
        **organization_to_response(org).model_dump(),
        section=section_to_response(section) if section else None,
        members=members_to_response(request.app.state.user_store, members),
    )


@router.put("/organizations/{org_id}", response_model=OrganizationResponse)
def update_organization(
    request: Request,
    org_id: int,
    body: OrganizationUpdate,
    identity: Identity = Depends(require_permission("organization", "edit")),
) -> OrganizationResponse:
    tenancy: TenancyStore = request.app.state.tenancy_store
    org = _scoped_organization(request, org_id, identity)
    fields = body.model_dump(exclude_unset=True)
    if "name" in fields and fields["name"] is None:
        del fields["name"]
    if "status" in fields and fields["status"] is None:
        del fields["status"]
    if "section_id" in fields:
        _require_visible_section(request, fields["section_id"], identity)
        detaching = fields["section_id"] is None and org.section_id is not None
        if detaching and not has_permission(request.app.state.user_store, identity.user_id, "organization", "create"):
            # Without a section the organization leaves every staff scope.
            raise AuthorizationError("Only users who can create organizations may detach one from its section.")

    try:
        tenancy.update_organization(org.id, **fields)
    except IntegrityError as exc:
        raise ConflictError("An organization with this INN already exists.") from exc

    request.app.state.audit.log(
        "organization_updated",
        actor_id=identity.user_id,
        entity="organization",
        entity_id=org.id,
        details=body.model_dump(exclude_unset=True, by_alias=True),
        ip_address=client_ip(request),
    )
    schedule_section_stats(request, org.section_id, fields.get("section_id"))
    return organization_to_response(tenancy.get_organization(org.id, MATCH_ALL))


@router.delete("/organizations/{org_id}", response_model=MessageResponse)
def archive_organization(
    request: Request,
    org_id: int,
    identity: Identity = Depends(require_permission("organization", "delete")),
) -> MessageResponse:
    """Organizations are never hard-deleted; DELETE sets status to archived."""
    tenancy: TenancyStore = request.app.state.tenancy_store
    org = _scoped_organization(request, org_id, identity)
    tenancy.archive_organization(org.id)
    request.app.state.audit.log(
        "organization_archived",
        actor_id=identity.user_id,
        entity="organization",
        entity_id=org.id,
        details={"name": org.name, "previousStatus": org.status},
        ip_address=client_ip(request),
    )
    schedule_section_stats(request, org.section_id)
    return MessageResponse(message="Organization archived.")


@router.post("/organizations/{org_id}/members", response_model=MemberResponse, status_code=201)
def add_organization_member(
    request: Request,
    org_id: int,
    body: OrganizationMemberAdd,
    identity: Identity = Depends(require_permission("organization", "edit")),
) -> MemberResponse:
    tenancy: TenancyStore = request.app.state.tenancy_store
    user_store: UserStore = request.app.state.user_store
    org = _scoped_organization(request, org_id, identity)
    user = user_store.get_by_email(body.email)
    if user is None:
        raise NotFoundError("User not found.")
    member = OrganizationMember(organization_id=org.id, user_id=user.id, role=body.role)
    try:
        tenancy.add_organization_member(member)
    except IntegrityError as exc:
        raise ConflictError("User is already a member of this organization.") from exc

    request.app.state.audit.log(
        "organization_member_added",
        actor_id=identity.user_id,
        entity="organization",
        entity_id=org.id,
        details={"memberId": user.id, "email": user.email, "role": member.role},
        ip_address=client_ip(request),
    )
    schedule_section_stats(request, org.section_id)
    return members_to_response(user_store, [member])[0]


@router.delete("/organizations/{org_id}/members/{user_id}", response_model=MessageResponse)
def remove_organization_member(
    request: Request,
    org_id: int,
    user_id: int,
    identity: Identity = Depends(require_permission("organization", "edit")),
) -> MessageResponse:
    tenancy: TenancyStore = request.app.state.tenancy_store
    org = _scoped_organization(request, org_id, identity)
    if not tenancy.remove_organization_member(org.id, user_id):
        raise NotFoundError("Member not found.")
    request.app.state.audit.log(
        "organization_member_removed",
        actor_id=identity.user_id,
        entity="organization",
        entity_id=org.id,
        details={"removedUserId": user_id},
        ip_address=client_ip(request),
    )
    schedule_section_stats(request, org.section_id)
    return MessageResponse(message="Member removed.")
