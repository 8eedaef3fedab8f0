"""
api/routes/v1/stats.py -- Dashboard counters, scoped like every other read.

GET /api/v1/stats returns organization counts by status under the caller's
organization scope, leaving out statuses that mean "no longer serviced".
sectionsTotal is only included for callers holding section:view.
"""

from __future__ import annotations

from fastapi import APIRouter, Depends, Request

from api.models import StatsResponse
from auth.dependencies import require_permission
from auth.models import Identity
from auth.permissions import has_permission
from tenancy.models import INACTIVE_ORGANIZATION_STATUSES
from tenancy.scope import ORGANIZATION, SECTION, scope_filter
from tenancy.store import TenancyStore

router = APIRouter()


@router.get("/stats", response_model=StatsResponse)
def get_stats(
    request: Request,
    identity: Identity = Depends(require_permission("organization", "view")),
) -> StatsResponse:
    tenancy: TenancyStore = request.app.state.tenancy_store
    by_status = tenancy.count_organizations_by_status(
        scope_filter(ORGANIZATION, identity), exclude=INACTIVE_ORGANIZATION_STATUSES
    )
    sections_total = None
    if has_permission(request.app.state.user_store, identity.user_id, "section", "view"):
        sections_total = tenancy.count_sections(scope_filter(SECTION, identity))
    return StatsResponse(
        organizations_by_status=by_status,
        organizations_total=sum(by_status.values()),
        sections_total=sections_total,
    )
