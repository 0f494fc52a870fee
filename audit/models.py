"""
audit/models.py -- Domain dataclass for audit log entries.

Pure data container. Entries are written by the auth orchestrator (login,
logout, refresh-token reuse) and by management operations (user and role
changes). Nothing in the codebase mutates or deletes them.
"""

from dataclasses import dataclass
from typing import Optional


@dataclass
class AuditLog:
    """One security-relevant action.

    old_value / new_value are JSON snapshots for update actions, None
    otherwise. user_id is None for actions without an authenticated actor.
    """

    tenant_id: str
    action: str  # "login", "logout", "user.update", "role.delete", ...
    resource: str  # "auth", "users", "roles"
    id: Optional[str] = None
    user_id: Optional[str] = None
    resource_id: Optional[str] = None
    old_value: Optional[str] = None
    new_value: Optional[str] = None
    ip_address: str = ""
    user_agent: str = ""
    created_at: str = ""  # ISO 8601, set by store on insert
