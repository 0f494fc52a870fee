"""
audit/recorder.py -- Best-effort audit writer shared by every service.

Audit writes are at-least-once best effort, not transactional with the
operation they describe: a failed write is logged at WARNING with the
traceback and never changes the outcome of the primary operation. Services
call AuditRecorder.record() after their own write has committed.
"""

from __future__ import annotations

import json
import logging

from sqlalchemy.exc import SQLAlchemyError

from audit.models import AuditLog
from audit.store import AuditStore

logger = logging.getLogger("backoffice.audit")


def snapshot(value) -> str | None:
    """Serialize an old/new value for the audit row (None stays None)."""
    if value is None:
        return None
    return json.dumps(value, sort_keys=True, default=str)


class AuditRecorder:
    def __init__(self, store: AuditStore) -> None:
        self.store = store

    def record(
        self,
        tenant_id: str,
        user_id: str | None,
        action: str,
        resource: str,
        resource_id: str | None = None,
        old_value=None,
        new_value=None,
        ip_address: str = "",
        user_agent: str = "",
    ) -> bool:
        """Write one entry. Returns False (after logging) if the write failed."""
        entry = AuditLog(
            tenant_id=tenant_id,
            user_id=user_id,
            action=action,
            resource=resource,
            resource_id=resource_id,
            old_value=snapshot(old_value),
            new_value=snapshot(new_value),
            ip_address=ip_address,
            user_agent=user_agent,
        )
        try:
            self.store.log_event(entry)
        except SQLAlchemyError:
            logger.warning("Audit write failed for action=%s user=%s", action, user_id, exc_info=True)
            return False
        return True
