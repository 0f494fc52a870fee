"""
auth/store.py -- SQLAlchemy Core persistence for users, roles and permissions.

Pattern: Repository + Data Mapper. UserStore is the repository backing both
the credential store (users, password hashes, status, last login) and the
permission store (roles, permissions, user_roles, role_permissions);
_row_to_user / _row_to_role / _row_to_permission are the mappers. Route and
service code never touches SQL directly.

Security:
  All queries use bound parameters. No f-strings in SQL.

Tenancy:
  users and roles carry tenant_id; email and role name are unique per tenant.
  permissions are global. Cross-tenant assignment (a role from tenant A to a
  user of tenant B) is rejected in code by assign_roles().

Layer rule: no imports from api/, audit/, or cache/.
"""

from __future__ import annotations

import uuid

from sqlalchemy import (
    Boolean,
    Column,
    ForeignKey,
    Index,
    MetaData,
    String,
    Table,
    Text,
    UniqueConstraint,
    func,
    select,
)
from sqlalchemy.engine import Engine

from auth.models import Permission, Role, User
from core.db import LIKE_ESCAPE, contains_pattern, make_engine, to_iso, utcnow

# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------

_metadata = MetaData()

_users = Table(
    "users",
    _metadata,
    Column("id", String(36), primary_key=True),
    Column("tenant_id", String(36), nullable=False),
    Column("email", String(255), nullable=False),  # stored lower-cased
    Column("password_hash", Text),
    Column("first_name", String(100), nullable=False, server_default=""),
    Column("last_name", String(100), nullable=False, server_default=""),
    Column("status", String(20), nullable=False, server_default="active"),
    Column("created_at", String(32), nullable=False),
    Column("updated_at", String(32), nullable=False),
    Column("last_login_at", String(32)),
    UniqueConstraint("tenant_id", "email", name="uq_users_tenant_email"),
)

_roles = Table(
    "roles",
    _metadata,
    Column("id", String(36), primary_key=True),
    Column("tenant_id", String(36), nullable=False),
    Column("name", String(100), nullable=False),
    Column("description", String(500), nullable=False, server_default=""),
    Column("is_system", Boolean, nullable=False, server_default="0"),
    Column("created_at", String(32), nullable=False),
    Column("updated_at", String(32), nullable=False),
    UniqueConstraint("tenant_id", "name", name="uq_roles_tenant_name"),
)

_permissions = Table(
    "permissions",
    _metadata,
    Column("id", String(36), primary_key=True),
    Column("resource", String(50), nullable=False),
    Column("action", String(50), nullable=False),
    Column("description", String(255), nullable=False, server_default=""),
    Column("created_at", String(32), nullable=False),
    UniqueConstraint("resource", "action", name="uq_permissions_resource_action"),
)

_user_roles = Table(
    "user_roles",
    _metadata,
    Column("user_id", String(36), ForeignKey("users.id", ondelete="CASCADE"), primary_key=True),
    Column("role_id", String(36), ForeignKey("roles.id", ondelete="CASCADE"), primary_key=True),
    Column("created_at", String(32), nullable=False),
    Index("ix_user_roles_role_id", "role_id"),
)

_role_permissions = Table(
    "role_permissions",
    _metadata,
    Column("role_id", String(36), ForeignKey("roles.id", ondelete="CASCADE"), primary_key=True),
    Column("permission_id", String(36), ForeignKey("permissions.id", ondelete="CASCADE"), primary_key=True),
    Column("created_at", String(32), nullable=False),
)

# Catalog seeded on startup. "*:*" is the superuser grant held by the
# system admin role.
DEFAULT_PERMISSIONS: tuple[tuple[str, str, str], ...] = (
    ("*", "*", "Full access to every resource"),
    ("users", "read", "View users"),
    ("users", "create", "Create users"),
    ("users", "update", "Update users and their role assignments"),
    ("users", "delete", "Delete users"),
    ("users", "*", "All user actions"),
    ("roles", "read", "View roles and permissions"),
    ("roles", "create", "Create roles"),
    ("roles", "update", "Update roles"),
    ("roles", "delete", "Delete roles"),
    ("roles", "*", "All role actions"),
    ("audit", "read", "View the audit log"),
    ("dashboard", "read", "View dashboard statistics"),
)

# Sortable user listing columns. Anything else falls back to email.
USER_SORT_COLUMNS = ("email", "first_name", "last_name", "status", "created_at", "last_login_at")


def _new_id() -> str:
    return str(uuid.uuid4())


def _now_iso() -> str:
    return to_iso(utcnow())


def normalize_email(email: str) -> str:
    return email.strip().lower()


# ---------------------------------------------------------------------------
# Repository
# ---------------------------------------------------------------------------


class UserStore:
    """Repository for User, Role and Permission entities.

    Usage:
        store = UserStore("sqlite:///backoffice.db")
        user_id = store.create_user(User(tenant_id=t, email="a@x.io", password_hash=hash_password("secret")))
        store.get_user_permissions(user_id)
        store.close()
    """

    def __init__(self, db_url: str, timeout: float = 5.0) -> None:
        self.engine: Engine = make_engine(db_url, timeout)
        _metadata.create_all(self.engine)

    # ------------------------------------------------------------------
    # Users
    # ------------------------------------------------------------------

    def create_user(self, user: User) -> str:
        """Insert a new user and return its id.

        Raises sqlalchemy.exc.IntegrityError if the email already exists in
        the tenant.
        """
        user_id = user.id or _new_id()
        now = _now_iso()
        with self.engine.begin() as conn:
            conn.execute(
                _users.insert().values(
                    id=user_id,
                    tenant_id=user.tenant_id,
                    email=normalize_email(user.email),
                    password_hash=user.password_hash,
                    first_name=user.first_name,
                    last_name=user.last_name,
                    status=user.status,
                    created_at=now,
                    updated_at=now,
                )
            )
        return user_id

    def get_by_id(self, user_id: str) -> User | None:
        with self.engine.connect() as conn:
            row = conn.execute(_users.select().where(_users.c.id == user_id)).fetchone()
        return _row_to_user(row) if row is not None else None

    def get_by_email(self, email: str, tenant_id: str | None = None) -> User | None:
        """Case-insensitive email lookup.

        Without tenant_id the email must identify exactly one user across all
        tenants; an ambiguous match returns None so login cannot pick a tenant
        arbitrarily.
        """
        query = _users.select().where(_users.c.email == normalize_email(email))
        if tenant_id is not None:
            query = query.where(_users.c.tenant_id == tenant_id)
        with self.engine.connect() as conn:
            rows = conn.execute(query.limit(2)).fetchall()
        if len(rows) != 1:
            return None
        return _row_to_user(rows[0])

    def _user_filters(self, query, tenant_id: str, status: str | None, search: str | None):
        query = query.where(_users.c.tenant_id == tenant_id)
        if status is not None:
            query = query.where(_users.c.status == status)
        if search:
            pattern = contains_pattern(search)
            query = query.where(
                _users.c.email.ilike(pattern, escape=LIKE_ESCAPE)
                | _users.c.first_name.ilike(pattern, escape=LIKE_ESCAPE)
                | _users.c.last_name.ilike(pattern, escape=LIKE_ESCAPE)
            )
        return query

    def list_users(
        self,
        tenant_id: str,
        status: str | None = None,
        search: str | None = None,
        sort: str = "email",
        order: str = "asc",
        limit: int = 50,
        offset: int = 0,
    ) -> list[User]:
        """Return one page of a tenant's users.

        search is a case-insensitive substring match on email, first_name and
        last_name. sort must be one of USER_SORT_COLUMNS (else email); order
        is "asc" or "desc". Ties break on id so pages are stable.
        """
        column = _users.c[sort] if sort in USER_SORT_COLUMNS else _users.c.email
        direction = column.desc() if order == "desc" else column.asc()
        query = self._user_filters(_users.select(), tenant_id, status, search)
        query = query.order_by(direction, _users.c.id).limit(limit).offset(offset)
        with self.engine.connect() as conn:
            rows = conn.execute(query).fetchall()
        return [_row_to_user(r) for r in rows]

    def count_users(self, tenant_id: str, status: str | None = None, search: str | None = None) -> int:
        query = self._user_filters(select(func.count()).select_from(_users), tenant_id, status, search)
        with self.engine.connect() as conn:
            return conn.execute(query).scalar() or 0

    def count_by_status(self, tenant_id: str) -> dict[str, int]:
        """Return {status: user count} for the tenant. Absent statuses are omitted."""
        query = (
            select(_users.c.status, func.count())
            .where(_users.c.tenant_id == tenant_id)
            .group_by(_users.c.status)
        )
        with self.engine.connect() as conn:
            return {status: count for status, count in conn.execute(query)}

    def update_user(self, user_id: str, **fields) -> bool:
        """Update mutable fields on an existing user.

        Accepted fields: first_name, last_name, status, password_hash.
        Returns True if a row was updated, False if user_id was not found.
        """
        fields["updated_at"] = _now_iso()
        with self.engine.begin() as conn:
            result = conn.execute(_users.update().where(_users.c.id == user_id).values(**fields))
        return result.rowcount > 0

    def update_last_login(self, user_id: str) -> str:
        """Stamp the current UTC timestamp as last_login_at and return it."""
        stamp = _now_iso()
        with self.engine.begin() as conn:
            conn.execute(_users.update().where(_users.c.id == user_id).values(last_login_at=stamp))
        return stamp

    def delete_user(self, user_id: str) -> bool:
        with self.engine.begin() as conn:
            conn.execute(_user_roles.delete().where(_user_roles.c.user_id == user_id))
            result = conn.execute(_users.delete().where(_users.c.id == user_id))
        return result.rowcount > 0

    # ------------------------------------------------------------------
    # Permissions
    # ------------------------------------------------------------------

    def ensure_permissions(self, catalog=DEFAULT_PERMISSIONS) -> int:
        """Insert any (resource, action) pairs missing from the catalog.

        Idempotent -- safe to call on every startup. Returns rows inserted.
        """
        inserted = 0
        with self.engine.begin() as conn:
            existing = {(r.resource, r.action) for r in conn.execute(select(_permissions.c.resource, _permissions.c.action))}
            for resource, action, description in catalog:
                if (resource, action) in existing:
                    continue
                conn.execute(
                    _permissions.insert().values(
                        id=_new_id(),
                        resource=resource,
                        action=action,
                        description=description,
                        created_at=_now_iso(),
                    )
                )
                inserted += 1
        return inserted

    def list_permissions(self) -> list[Permission]:
        with self.engine.connect() as conn:
            rows = conn.execute(_permissions.select().order_by(_permissions.c.resource, _permissions.c.action)).fetchall()
        return [_row_to_permission(r) for r in rows]

    def get_permission(self, resource: str, action: str) -> Permission | None:
        with self.engine.connect() as conn:
            row = conn.execute(
                _permissions.select().where((_permissions.c.resource == resource) & (_permissions.c.action == action))
            ).fetchone()
        return _row_to_permission(row) if row is not None else None

    def get_user_permissions(self, user_id: str) -> list[Permission]:
        """Return the union of permissions granted by every role of user_id."""
        query = (
            select(_permissions)
            .distinct()
            .select_from(
                _permissions.join(_role_permissions, _role_permissions.c.permission_id == _permissions.c.id).join(
                    _user_roles, _user_roles.c.role_id == _role_permissions.c.role_id
                )
            )
            .where(_user_roles.c.user_id == user_id)
        )
        with self.engine.connect() as conn:
            rows = conn.execute(query).fetchall()
        return [_row_to_permission(r) for r in rows]

    # ------------------------------------------------------------------
    # Roles
    # ------------------------------------------------------------------

    def create_role(self, role: Role, permission_ids: list[str] | None = None) -> str:
        """Insert a role and its permission links in one transaction.

        Raises sqlalchemy.exc.IntegrityError if the name exists in the tenant.
        """
        role_id = role.id or _new_id()
        now = _now_iso()
        with self.engine.begin() as conn:
            conn.execute(
                _roles.insert().values(
                    id=role_id,
                    tenant_id=role.tenant_id,
                    name=role.name,
                    description=role.description,
                    is_system=role.is_system,
                    created_at=now,
                    updated_at=now,
                )
            )
            for permission_id in permission_ids or []:
                conn.execute(_role_permissions.insert().values(role_id=role_id, permission_id=permission_id, created_at=now))
        return role_id

    def get_role(self, role_id: str) -> Role | None:
        with self.engine.connect() as conn:
            row = conn.execute(_roles.select().where(_roles.c.id == role_id)).fetchone()
            if row is None:
                return None
            return _row_to_role(row, self._role_permission_names(conn, [role_id]).get(role_id, []))

    def get_role_by_name(self, tenant_id: str, name: str) -> Role | None:
        with self.engine.connect() as conn:
            row = conn.execute(
                _roles.select().where((_roles.c.tenant_id == tenant_id) & (_roles.c.name == name))
            ).fetchone()
            if row is None:
                return None
            return _row_to_role(row, self._role_permission_names(conn, [row.id]).get(row.id, []))

    def list_roles(self, tenant_id: str) -> list[Role]:
        with self.engine.connect() as conn:
            rows = conn.execute(_roles.select().where(_roles.c.tenant_id == tenant_id).order_by(_roles.c.name)).fetchall()
            names = self._role_permission_names(conn, [r.id for r in rows])
        return [_row_to_role(r, names.get(r.id, [])) for r in rows]

    def count_roles(self, tenant_id: str) -> int:
        query = select(func.count()).select_from(_roles).where(_roles.c.tenant_id == tenant_id)
        with self.engine.connect() as conn:
            return conn.execute(query).scalar() or 0

    def update_role(self, role_id: str, **fields) -> bool:
        """Update name/description. Returns False if role_id was not found."""
        fields["updated_at"] = _now_iso()
        with self.engine.begin() as conn:
            result = conn.execute(_roles.update().where(_roles.c.id == role_id).values(**fields))
        return result.rowcount > 0

    def set_role_permissions(self, role_id: str, permission_ids: list[str]) -> None:
        """Replace the role's permission links with permission_ids."""
        now = _now_iso()
        with self.engine.begin() as conn:
            conn.execute(_role_permissions.delete().where(_role_permissions.c.role_id == role_id))
            for permission_id in dict.fromkeys(permission_ids):
                conn.execute(_role_permissions.insert().values(role_id=role_id, permission_id=permission_id, created_at=now))

    def delete_role(self, role_id: str) -> bool:
        with self.engine.begin() as conn:
            conn.execute(_role_permissions.delete().where(_role_permissions.c.role_id == role_id))
            conn.execute(_user_roles.delete().where(_user_roles.c.role_id == role_id))
            result = conn.execute(_roles.delete().where(_roles.c.id == role_id))
        return result.rowcount > 0

    # ------------------------------------------------------------------
    # User <-> role assignment
    # ------------------------------------------------------------------

    def get_user_roles(self, user_id: str) -> list[Role]:
        query = (
            select(_roles)
            .select_from(_roles.join(_user_roles, _user_roles.c.role_id == _roles.c.id))
            .where(_user_roles.c.user_id == user_id)
            .order_by(_roles.c.name)
        )
        with self.engine.connect() as conn:
            rows = conn.execute(query).fetchall()
            names = self._role_permission_names(conn, [r.id for r in rows])
        return [_row_to_role(r, names.get(r.id, [])) for r in rows]

    def set_user_roles(self, user_id: str, role_ids: list[str]) -> None:
        """Replace user_id's role assignments with role_ids."""
        now = _now_iso()
        with self.engine.begin() as conn:
            conn.execute(_user_roles.delete().where(_user_roles.c.user_id == user_id))
            for role_id in dict.fromkeys(role_ids):
                conn.execute(_user_roles.insert().values(user_id=user_id, role_id=role_id, created_at=now))

    def add_user_role(self, user_id: str, role_id: str) -> None:
        with self.engine.begin() as conn:
            exists = conn.execute(
                select(_user_roles.c.user_id).where((_user_roles.c.user_id == user_id) & (_user_roles.c.role_id == role_id))
            ).fetchone()
            if exists is None:
                conn.execute(_user_roles.insert().values(user_id=user_id, role_id=role_id, created_at=_now_iso()))

    def list_role_member_ids(self, role_id: str) -> list[str]:
        """Return ids of users holding role_id (for cache invalidation)."""
        with self.engine.connect() as conn:
            rows = conn.execute(select(_user_roles.c.user_id).where(_user_roles.c.role_id == role_id)).fetchall()
        return [r.user_id for r in rows]

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    @staticmethod
    def _role_permission_names(conn, role_ids: list[str]) -> dict[str, list[str]]:
        if not role_ids:
            return {}
        rows = conn.execute(
            select(_role_permissions.c.role_id, _permissions.c.resource, _permissions.c.action)
            .select_from(_role_permissions.join(_permissions, _permissions.c.id == _role_permissions.c.permission_id))
            .where(_role_permissions.c.role_id.in_(role_ids))
            .order_by(_permissions.c.resource, _permissions.c.action)
        ).fetchall()
        names: dict[str, list[str]] = {}
        for r in rows:
            names.setdefault(r.role_id, []).append(f"{r.resource}:{r.action}")
        return names

    def ping(self) -> bool:
        """Connectivity check for the health endpoint."""
        with self.engine.connect() as conn:
            conn.execute(select(1))
        return True

    def close(self) -> None:
        self.engine.dispose()


# ---------------------------------------------------------------------------
# Row mappers (Data Mapper pattern)
# ---------------------------------------------------------------------------


def _row_to_user(row) -> User:
    return User(
        id=row.id,
        tenant_id=row.tenant_id,
        email=row.email,
        password_hash=row.password_hash,
        first_name=row.first_name,
        last_name=row.last_name,
        status=row.status,
        created_at=row.created_at,
        updated_at=row.updated_at,
        last_login_at=row.last_login_at,
    )


def _row_to_role(row, permissions: list[str]) -> Role:
    return Role(
        id=row.id,
        tenant_id=row.tenant_id,
        name=row.name,
        description=row.description,
        is_system=bool(row.is_system),
        created_at=row.created_at,
        updated_at=row.updated_at,
        permissions=permissions,
    )


def _row_to_permission(row) -> Permission:
    return Permission(
        id=row.id,
        resource=row.resource,
        action=row.action,
        description=row.description,
        created_at=row.created_at,
    )
