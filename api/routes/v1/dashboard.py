"""
api/routes/v1/dashboard.py -- Aggregated metrics endpoint for the back office.

Returns a single payload suitable for driving dashboard widgets:
  - Total and active user counts, and users per status
  - Number of roles in the tenant
  - Successful logins over the last 24 hours
  - The 10 most recent audit entries

This is a read-only aggregate route -- no mutations here. Every figure is
scoped to the caller's tenant.
"""

from __future__ import annotations

from datetime import timedelta

from fastapi import APIRouter, Depends, Request

from api.models import ActivityItem, DashboardStatsResponse
from audit.store import AuditStore
from auth.dependencies import require_permission
from auth.errors import store_errors
from auth.models import TokenClaims
from auth.store import UserStore
from core.db import utcnow

# Auth policy:
# - GET /api/v1/dashboard/stats: requires dashboard:read
router = APIRouter()

RECENT_LOGIN_WINDOW = timedelta(hours=24)
RECENT_ACTIVITY_LIMIT = 10


@router.get("/dashboard/stats", response_model=DashboardStatsResponse)
def get_dashboard_stats(
    request: Request,
    claims: TokenClaims = Depends(require_permission("dashboard", "read")),
) -> DashboardStatsResponse:
    """Return tenant-wide user, role and activity metrics.

    users_by_status always carries active, inactive and suspended, zero-filled.
    recent_activity resolves the actor's email where the actor still exists
    in the tenant; system and deleted actors get an empty string.
    """
    users: UserStore = request.app.state.user_store
    audit: AuditStore = request.app.state.audit_store
    tenant_id = claims.tenant_id

    with store_errors("dashboard stats"):
        by_status = {"active": 0, "inactive": 0, "suspended": 0}
        by_status.update(users.count_by_status(tenant_id))
        total_roles = users.count_roles(tenant_id)
        recent_logins = audit.count_recent_logins(tenant_id, utcnow() - RECENT_LOGIN_WINDOW)
        entries = audit.recent(tenant_id, limit=RECENT_ACTIVITY_LIMIT)

        emails: dict[str, str] = {}
        for actor_id in {e.user_id for e in entries if e.user_id}:
            actor = users.get_by_id(actor_id)
            if actor is not None and actor.tenant_id == tenant_id:
                emails[actor_id] = actor.email

    return DashboardStatsResponse(
        total_users=sum(by_status.values()),
        active_users=by_status["active"],
        total_roles=total_roles,
        recent_logins=recent_logins,
        users_by_status=by_status,
        recent_activity=[
            ActivityItem(
                action=e.action,
                resource=e.resource,
                user_email=emails.get(e.user_id or "", ""),
                created_at=e.created_at,
            )
            for e in entries
        ],
    )
