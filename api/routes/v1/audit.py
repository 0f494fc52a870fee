"""
api/routes/v1/audit.py -- Read-only audit log endpoint.

Routes:
  GET /api/v1/audit-logs   -- paginated entries of the caller's tenant (audit:read)

Entries are immutable; there is no write or delete route. Filtering by
action, actor user id and resource is optional; search matches action and
resource case-insensitively. Newest entries come first unless sort/order say
otherwise.
"""

from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, Query, Request

from api.models import AuditLogListResponse, AuditLogResponse
from audit.store import AUDIT_SORT_COLUMNS, AuditStore
from auth.dependencies import require_permission
from auth.errors import store_errors
from auth.models import TokenClaims

router = APIRouter()

_SORT_PATTERN = "^(" + "|".join(AUDIT_SORT_COLUMNS) + ")$"


@router.get("/audit-logs", response_model=AuditLogListResponse)
def list_audit_logs(
    request: Request,
    action: Optional[str] = Query(default=None, max_length=50),
    user_id: Optional[str] = Query(default=None, max_length=36),
    resource: Optional[str] = Query(default=None, max_length=50),
    search: Optional[str] = Query(default=None, max_length=50),
    sort: str = Query(default="created_at", pattern=_SORT_PATTERN),
    order: str = Query(default="desc", pattern="^(asc|desc)$"),
    limit: int = Query(default=50, ge=1, le=200),
    offset: int = Query(default=0, ge=0),
    claims: TokenClaims = Depends(require_permission("audit", "read")),
) -> AuditLogListResponse:
    store: AuditStore = request.app.state.audit_store
    search = search.strip() if search else None
    filters = {"action": action, "user_id": user_id, "resource": resource, "search": search}
    with store_errors("audit list"):
        entries = store.list_events(claims.tenant_id, sort=sort, order=order, limit=limit, offset=offset, **filters)
        total = store.count_events(claims.tenant_id, **filters)
    return AuditLogListResponse(
        items=[AuditLogResponse.from_entry(e) for e in entries],
        total=total,
        limit=limit,
        offset=offset,
    )
