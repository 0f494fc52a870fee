"""
audit/store.py -- Append-only SQLAlchemy Core store for audit log entries.

The store exposes insert and read paths only. Entries are immutable once
written, so there is no update or delete method.

Callers treat writes as best-effort (see audit/recorder.py): a failed write is
logged and never rolls back the primary operation.

Layer rule: no imports from api/, auth/, or cache/.
"""

from __future__ import annotations

import uuid
from datetime import datetime

from sqlalchemy import Column, Index, MetaData, String, Table, Text, func, select
from sqlalchemy.engine import Engine

from audit.models import AuditLog
from core.db import LIKE_ESCAPE, contains_pattern, make_engine, to_iso, utcnow

_metadata = MetaData()

_audit_logs = Table(
    "audit_logs",
    _metadata,
    Column("id", String(36), primary_key=True),
    Column("tenant_id", String(36), nullable=False),
    Column("user_id", String(36)),
    Column("action", String(50), nullable=False),
    Column("resource", String(50), nullable=False),
    Column("resource_id", String(36)),
    Column("old_value", Text),
    Column("new_value", Text),
    Column("ip_address", String(45), nullable=False, server_default=""),
    Column("user_agent", Text, nullable=False, server_default=""),
    Column("created_at", String(32), nullable=False),
    Index("ix_audit_logs_tenant_created", "tenant_id", "created_at"),
)

AUDIT_SORT_COLUMNS = ("created_at", "action", "resource")


class AuditStore:
    """Repository for AuditLog entries.

    Usage:
        audit = AuditStore("sqlite:///backoffice.db")
        audit.log_event(AuditLog(tenant_id=t, action="login", resource="auth", user_id=u))
        audit.list_events(t, action="login")
    """

    def __init__(self, db_url: str, timeout: float = 5.0) -> None:
        self.engine: Engine = make_engine(db_url, timeout)
        _metadata.create_all(self.engine)

    def log_event(self, entry: AuditLog) -> str:
        """Append entry and return its id."""
        entry_id = entry.id or str(uuid.uuid4())
        with self.engine.begin() as conn:
            conn.execute(
                _audit_logs.insert().values(
                    id=entry_id,
                    tenant_id=entry.tenant_id,
                    user_id=entry.user_id,
                    action=entry.action,
                    resource=entry.resource,
                    resource_id=entry.resource_id,
                    old_value=entry.old_value,
                    new_value=entry.new_value,
                    ip_address=entry.ip_address or "",
                    user_agent=entry.user_agent or "",
                    created_at=entry.created_at or to_iso(utcnow()),
                )
            )
        return entry_id

    def _filtered(
        self,
        query,
        tenant_id: str,
        action: str | None,
        user_id: str | None,
        resource: str | None,
        search: str | None = None,
    ):
        query = query.where(_audit_logs.c.tenant_id == tenant_id)
        if action is not None:
            query = query.where(_audit_logs.c.action == action)
        if user_id is not None:
            query = query.where(_audit_logs.c.user_id == user_id)
        if resource is not None:
            query = query.where(_audit_logs.c.resource == resource)
        if search:
            pattern = contains_pattern(search)
            query = query.where(
                _audit_logs.c.action.ilike(pattern, escape=LIKE_ESCAPE)
                | _audit_logs.c.resource.ilike(pattern, escape=LIKE_ESCAPE)
            )
        return query

    def list_events(
        self,
        tenant_id: str,
        action: str | None = None,
        user_id: str | None = None,
        resource: str | None = None,
        search: str | None = None,
        sort: str = "created_at",
        order: str = "desc",
        limit: int = 50,
        offset: int = 0,
    ) -> list[AuditLog]:
        """Return a tenant's entries, newest first by default.

        search is a case-insensitive substring match on action and resource.
        sort must be one of AUDIT_SORT_COLUMNS (else created_at).
        """
        column = _audit_logs.c[sort] if sort in AUDIT_SORT_COLUMNS else _audit_logs.c.created_at
        direction = column.asc() if order == "asc" else column.desc()
        query = self._filtered(_audit_logs.select(), tenant_id, action, user_id, resource, search)
        query = query.order_by(direction, _audit_logs.c.id).limit(limit).offset(offset)
        with self.engine.connect() as conn:
            rows = conn.execute(query).fetchall()
        return [_row_to_entry(r) for r in rows]

    def count_events(
        self,
        tenant_id: str,
        action: str | None = None,
        user_id: str | None = None,
        resource: str | None = None,
        search: str | None = None,
    ) -> int:
        query = self._filtered(
            select(func.count()).select_from(_audit_logs), tenant_id, action, user_id, resource, search
        )
        with self.engine.connect() as conn:
            return conn.execute(query).scalar() or 0

    # ------------------------------------------------------------------
    # Dashboard aggregates
    # ------------------------------------------------------------------

    def count_recent_logins(self, tenant_id: str, since: datetime) -> int:
        """Count successful logins in the tenant at or after since."""
        query = (
            select(func.count())
            .select_from(_audit_logs)
            .where(
                (_audit_logs.c.tenant_id == tenant_id)
                & (_audit_logs.c.action == "login")
                & (_audit_logs.c.created_at >= to_iso(since))
            )
        )
        with self.engine.connect() as conn:
            return conn.execute(query).scalar() or 0

    def recent(self, tenant_id: str, limit: int = 10) -> list[AuditLog]:
        return self.list_events(tenant_id, limit=limit)

    def close(self) -> None:
        self.engine.dispose()


def _row_to_entry(row) -> AuditLog:
    return AuditLog(
        id=row.id,
        tenant_id=row.tenant_id,
        user_id=row.user_id,
        action=row.action,
        resource=row.resource,
        resource_id=row.resource_id,
        old_value=row.old_value,
        new_value=row.new_value,
        ip_address=row.ip_address,
        user_agent=row.user_agent,
        created_at=row.created_at,
    )
