"""
api/routes/v1/audit_logs.py -- Admin read surface over the audit trail.

GET /api/v1/audit-logs
  Query: page, limit (clamped to [1, 100], default 50), entity, userId,
         from / to (YYYY-MM-DD, inclusive UTC days), search (action,
         entityId, or ipAddress substring, case-insensitive).
  Order: newest first.
  Access: admin role only.

details are passed through audit.redact.redact() on the way out. Stored rows
are never modified. userEmail is looked up at read time and is null when
the actor has since been deleted.
"""

from __future__ import annotations

from datetime import date

from fastapi import APIRouter, Depends, Query, Request

from api.models import AuditLogEntryResponse, AuditLogListResponse
from api.pagination import Page, get_page
from audit.models import AuditQuery
from audit.redact import redact
from audit.store import AuditStore
from auth.dependencies import require_role
from auth.models import Identity
from auth.permissions import ADMIN
from core.errors import ValidationError

router = APIRouter()


@router.get("/audit-logs", response_model=AuditLogListResponse)
def list_audit_logs(
    request: Request,
    entity: str | None = Query(None, max_length=50),
    user_id: int | None = Query(None, alias="userId"),
    date_from: date | None = Query(None, alias="from"),
    date_to: date | None = Query(None, alias="to"),
    search: str | None = Query(None, max_length=100),
    paging: Page = Depends(get_page),
    identity: Identity = Depends(require_role(ADMIN)),
) -> AuditLogListResponse:
    if date_from and date_to and date_from > date_to:
        raise ValidationError("'from' must not be after 'to'.")

    store: AuditStore = request.app.state.audit_store
    query = AuditQuery(entity=entity, user_id=user_id, date_from=date_from, date_to=date_to, search=search)
    entries, total = store.list_entries(query, page=paging.page, limit=paging.limit)

    actors = request.app.state.user_store.get_users_by_ids(e.user_id for e in entries if e.user_id is not None)
    data = []
    for e in entries:
        actor = actors.get(e.user_id) if e.user_id is not None else None
        data.append(
            AuditLogEntryResponse(
                id=e.id,
                user_id=e.user_id,
                user_email=actor.email if actor else None,
                action=e.action,
                entity=e.entity,
                entity_id=e.entity_id,
                details=redact(e.details),
                ip_address=e.ip_address,
                created_at=e.created_at,
            )
        )
    return AuditLogListResponse(data=data, total=total, page=paging.page, limit=paging.limit)
