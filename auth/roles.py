"""
auth/roles.py -- Role management and role assignment.

Every write that can change a user's effective permissions goes through
RoleService, which is what keeps the permission cache honest:

  assign_roles(user)            -> invalidate(user)
  update_role(permissions=...)  -> invalidate(each member of the role)
  delete_role(role)             -> invalidate(each former member)

System roles (is_system=True) are immutable: update and delete both raise
SystemRoleError. Role names are unique per tenant (RoleNameExists).
Permissions are referenced by their "resource:action" name.

Each successful mutation writes a best-effort audit entry with old/new
snapshots.

Layer rule: no imports from api/.
"""

from __future__ import annotations

import logging

from sqlalchemy.exc import IntegrityError

from audit.recorder import AuditRecorder
from auth.errors import (
    InvalidRoleAssignment,
    RoleNameExists,
    RoleNotFound,
    SystemRoleError,
    UnknownPermission,
    UserNotFound,
    store_errors,
)
from auth.models import Role
from auth.permissions import PermissionEvaluator
from auth.store import UserStore

logger = logging.getLogger("backoffice.auth.roles")


class RoleService:
    def __init__(self, store: UserStore, permissions: PermissionEvaluator, audit: AuditRecorder) -> None:
        self._store = store
        self._permissions = permissions
        self._audit = audit

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _permission_ids(self, names: list[str]) -> list[str]:
        with store_errors("permission lookup"):
            catalog = {p.name: p.id for p in self._store.list_permissions()}
        missing = [n for n in names if n not in catalog]
        if missing:
            raise UnknownPermission(f"Unknown permissions: {', '.join(sorted(missing))}")
        return [catalog[n] for n in names]

    def _tenant_role(self, role_id: str, tenant_id: str) -> Role:
        with store_errors("role lookup"):
            role = self._store.get_role(role_id)
        if role is None or role.tenant_id != tenant_id:
            raise RoleNotFound()
        return role

    @staticmethod
    def _snapshot(role: Role) -> dict:
        return {"name": role.name, "description": role.description, "permissions": sorted(role.permissions)}

    # ------------------------------------------------------------------
    # Roles
    # ------------------------------------------------------------------

    def list_roles(self, tenant_id: str) -> list[Role]:
        with store_errors("role list"):
            return self._store.list_roles(tenant_id)

    def get_role(self, role_id: str, tenant_id: str) -> Role:
        return self._tenant_role(role_id, tenant_id)

    def create_role(
        self,
        tenant_id: str,
        name: str,
        description: str = "",
        permissions: list[str] | None = None,
        actor_id: str | None = None,
        ip_address: str = "",
        user_agent: str = "",
    ) -> Role:
        permission_ids = self._permission_ids(permissions or [])
        with store_errors("role lookup"):
            if self._store.get_role_by_name(tenant_id, name) is not None:
                raise RoleNameExists()
        with store_errors("role create"):
            try:
                role_id = self._store.create_role(
                    Role(tenant_id=tenant_id, name=name, description=description), permission_ids
                )
            except IntegrityError as exc:
                # Lost a race with a concurrent create of the same name
                raise RoleNameExists() from exc
        role = self._tenant_role(role_id, tenant_id)
        self._audit.record(
            tenant_id, actor_id, "role.create", "roles", role_id,
            new_value=self._snapshot(role), ip_address=ip_address, user_agent=user_agent,
        )
        return role

    def update_role(
        self,
        role_id: str,
        tenant_id: str,
        name: str | None = None,
        description: str | None = None,
        permissions: list[str] | None = None,
        actor_id: str | None = None,
        ip_address: str = "",
        user_agent: str = "",
    ) -> Role:
        role = self._tenant_role(role_id, tenant_id)
        if role.is_system:
            raise SystemRoleError()
        before = self._snapshot(role)

        fields: dict = {}
        if name is not None and name != role.name:
            with store_errors("role lookup"):
                if self._store.get_role_by_name(tenant_id, name) is not None:
                    raise RoleNameExists()
            fields["name"] = name
        if description is not None:
            fields["description"] = description
        permission_ids = self._permission_ids(permissions) if permissions is not None else None

        with store_errors("role update"):
            if fields:
                self._store.update_role(role_id, **fields)
            if permission_ids is not None:
                members = self._store.list_role_member_ids(role_id)
                self._store.set_role_permissions(role_id, permission_ids)
                for user_id in members:
                    self._permissions.invalidate(user_id)

        updated = self._tenant_role(role_id, tenant_id)
        self._audit.record(
            tenant_id, actor_id, "role.update", "roles", role_id,
            old_value=before, new_value=self._snapshot(updated), ip_address=ip_address, user_agent=user_agent,
        )
        return updated

    def delete_role(
        self,
        role_id: str,
        tenant_id: str,
        actor_id: str | None = None,
        ip_address: str = "",
        user_agent: str = "",
    ) -> None:
        role = self._tenant_role(role_id, tenant_id)
        if role.is_system:
            raise SystemRoleError()
        with store_errors("role delete"):
            members = self._store.list_role_member_ids(role_id)
            self._store.delete_role(role_id)
        for user_id in members:
            self._permissions.invalidate(user_id)
        self._audit.record(
            tenant_id, actor_id, "role.delete", "roles", role_id,
            old_value=self._snapshot(role), ip_address=ip_address, user_agent=user_agent,
        )
        logger.info("Role %s deleted; %d member cache(s) invalidated", role_id, len(members))

    # ------------------------------------------------------------------
    # Assignment
    # ------------------------------------------------------------------

    def check_role_ids(self, tenant_id: str, role_ids: list[str]) -> None:
        """Raise InvalidRoleAssignment unless every id is a role of tenant_id."""
        known = {r.id for r in self.list_roles(tenant_id)}
        if any(rid not in known for rid in role_ids):
            raise InvalidRoleAssignment()

    def assign_roles(
        self,
        user_id: str,
        tenant_id: str,
        role_ids: list[str],
        actor_id: str | None = None,
        ip_address: str = "",
        user_agent: str = "",
    ) -> list[Role]:
        """Replace the user's roles with role_ids (all from the user's tenant)."""
        with store_errors("user lookup"):
            user = self._store.get_by_id(user_id)
            tenant_roles = {r.id: r for r in self._store.list_roles(tenant_id)}
            before = [r.name for r in self._store.get_user_roles(user_id)] if user is not None else []
        if user is None or user.tenant_id != tenant_id:
            raise UserNotFound()
        if any(rid not in tenant_roles for rid in role_ids):
            raise InvalidRoleAssignment()

        with store_errors("role assignment"):
            self._store.set_user_roles(user_id, role_ids)
        self._permissions.invalidate(user_id)

        after = sorted(tenant_roles[rid].name for rid in dict.fromkeys(role_ids))
        self._audit.record(
            tenant_id, actor_id, "user.roles", "users", user_id,
            old_value=sorted(before), new_value=after, ip_address=ip_address, user_agent=user_agent,
        )
        return [tenant_roles[rid] for rid in dict.fromkeys(role_ids)]
