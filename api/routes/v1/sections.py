"""
api/routes/v1/sections.py -- Section CRUD and staff membership.

Routes:
  GET    /api/v1/sections                         -- section:view, scoped list
  POST   /api/v1/sections                         -- section:create
  GET    /api/v1/sections/{id}                    -- section:view, scoped; members, organizations, stats
  PUT    /api/v1/sections/{id}                    -- section:edit, scoped
  DELETE /api/v1/sections/{id}                    -- section:delete, scoped; 400 while organizations attached
  POST   /api/v1/sections/{id}/members            -- section:edit, scoped
  DELETE /api/v1/sections/{id}/members/{user_id}  -- section:edit, scoped

Clients never see a section: their scope predicate for sections matches
nothing, so every single-section route answers 404 for them even if a
permission were granted.
"""

from __future__ import annotations

from fastapi import APIRouter, Depends, Query, Request
from sqlalchemy.exc import IntegrityError

from api.models import (
    MemberResponse,
    MessageResponse,
    SectionCreate,
    SectionDetailResponse,
    SectionListResponse,
    SectionMemberAdd,
    SectionResponse,
    SectionStatsResponse,
    SectionUpdate,
)
from api.pagination import Page, get_page
from api.routes.v1.organizations import members_to_response, organization_to_response, section_to_response
from api.tasks import schedule_section_stats
from auth.dependencies import client_ip, require_permission
from auth.models import Identity
from auth.store import UserStore
from core.errors import ConflictError, NotFoundError, ValidationError
from core.predicates import MATCH_ALL
from tenancy.models import Section, SectionMember
from tenancy.scope import SECTION, scope_filter
from tenancy.store import SectionQuery, TenancyStore

router = APIRouter()


def _scoped_section(request: Request, section_id: int, identity: Identity) -> Section:
    tenancy: TenancyStore = request.app.state.tenancy_store
    section = tenancy.get_section(section_id, scope_filter(SECTION, identity))
    if section is None:
        raise NotFoundError("Section not found.")
    return section


@router.get("/sections", response_model=SectionListResponse)
def list_sections(
    request: Request,
    search: str | None = Query(None, max_length=100),
    paging: Page = Depends(get_page),
    identity: Identity = Depends(require_permission("section", "view")),
) -> SectionListResponse:
    """List visible sections ordered by number. search matches name, or number when numeric."""
    tenancy: TenancyStore = request.app.state.tenancy_store
    sections, total = tenancy.list_sections(
        scope_filter(SECTION, identity), SectionQuery(search=search), page=paging.page, limit=paging.limit
    )
    return SectionListResponse(
        sections=[section_to_response(s) for s in sections],
        total=total,
        page=paging.page,
        limit=paging.limit,
    )


@router.post("/sections", response_model=SectionResponse, status_code=201)
def create_section(
    request: Request,
    body: SectionCreate,
    identity: Identity = Depends(require_permission("section", "create")),
) -> SectionResponse:
    tenancy: TenancyStore = request.app.state.tenancy_store
    try:
        section_id = tenancy.create_section(Section(number=body.number, name=body.name))
    except IntegrityError as exc:
        raise ConflictError("A section with this number already exists.") from exc

    request.app.state.audit.log(
        "section_created",
        actor_id=identity.user_id,
        entity="section",
        entity_id=section_id,
        details={"number": body.number, "name": body.name},
        ip_address=client_ip(request),
    )
    schedule_section_stats(request, section_id)
    return section_to_response(tenancy.get_section(section_id, MATCH_ALL))


@router.get("/sections/{section_id}", response_model=SectionDetailResponse)
def get_section(
    request: Request,
    section_id: int,
    identity: Identity = Depends(require_permission("section", "view")),
) -> SectionDetailResponse:
    tenancy: TenancyStore = request.app.state.tenancy_store
    section = _scoped_section(request, section_id, identity)
    stats = tenancy.get_section_stats(section.id)
    return SectionDetailResponse(
        **section_to_response(section).model_dump(),
        members=members_to_response(request.app.state.user_store, tenancy.list_section_members(section.id)),
        organizations=[organization_to_response(o) for o in tenancy.list_section_organizations(section.id)],
        stats=(
            SectionStatsResponse(
                organizations_by_status=stats.organizations_by_status,
                member_count=stats.member_count,
                computed_at=stats.computed_at,
            )
            if stats
            else None
        ),
    )


@router.put("/sections/{section_id}", response_model=SectionResponse)
def update_section(
    request: Request,
    section_id: int,
    body: SectionUpdate,
    identity: Identity = Depends(require_permission("section", "edit")),
) -> SectionResponse:
    tenancy: TenancyStore = request.app.state.tenancy_store
    section = _scoped_section(request, section_id, identity)
    fields = {k: v for k, v in body.model_dump(exclude_unset=True).items() if v is not None}
    try:
        tenancy.update_section(section.id, **fields)
    except IntegrityError as exc:
        raise ConflictError("A section with this number already exists.") from exc

    request.app.state.audit.log(
        "section_updated",
        actor_id=identity.user_id,
        entity="section",
        entity_id=section.id,
        details=fields,
        ip_address=client_ip(request),
    )
    return section_to_response(tenancy.get_section(section.id, MATCH_ALL))


@router.delete("/sections/{section_id}", response_model=MessageResponse)
def delete_section(
    request: Request,
    section_id: int,
    identity: Identity = Depends(require_permission("section", "delete")),
) -> MessageResponse:
    tenancy: TenancyStore = request.app.state.tenancy_store
    section = _scoped_section(request, section_id, identity)
    attached = tenancy.count_section_organizations(section.id)
    if attached:
        raise ValidationError(
            "Cannot delete a section that still has organizations.", detail={"organizationCount": attached}
        )
    tenancy.delete_section(section.id)
    request.app.state.audit.log(
        "section_deleted",
        actor_id=identity.user_id,
        entity="section",
        entity_id=section.id,
        details={"number": section.number, "name": section.name},
        ip_address=client_ip(request),
    )
    return MessageResponse(message="Section deleted.")


@router.post("/sections/{section_id}/members", response_model=MemberResponse, status_code=201)
def add_section_member(
    request: Request,
    section_id: int,
    body: SectionMemberAdd,
    identity: Identity = Depends(require_permission("section", "edit")),
) -> MemberResponse:
    tenancy: TenancyStore = request.app.state.tenancy_store
    user_store: UserStore = request.app.state.user_store
    section = _scoped_section(request, section_id, identity)
    user = user_store.get_by_email(body.email)
    if user is None:
        raise NotFoundError("User not found.")
    member = SectionMember(section_id=section.id, user_id=user.id, role=body.role)
    try:
        tenancy.add_section_member(member)
    except IntegrityError as exc:
        raise ConflictError("User is already a member of this section.") from exc

    request.app.state.audit.log(
        "section_member_added",
        actor_id=identity.user_id,
        entity="section",
        entity_id=section.id,
        details={"memberId": user.id, "email": user.email, "role": body.role},
        ip_address=client_ip(request),
    )
    schedule_section_stats(request, section.id)
    return members_to_response(user_store, [member])[0]


@router.delete("/sections/{section_id}/members/{user_id}", response_model=MessageResponse)
def remove_section_member(
    request: Request,
    section_id: int,
    user_id: int,
    identity: Identity = Depends(require_permission("section", "edit")),
) -> MessageResponse:
    tenancy: TenancyStore = request.app.state.tenancy_store
    section = _scoped_section(request, section_id, identity)
    if not tenancy.remove_section_member(section.id, user_id):
        raise NotFoundError("Member not found.")
    request.app.state.audit.log(
        "section_member_removed",
        actor_id=identity.user_id,
        entity="section",
        entity_id=section.id,
        details={"removedUserId": user_id},
        ip_address=client_ip(request),
    )
    schedule_section_stats(request, section.id)
    return MessageResponse(message="Member removed.")
