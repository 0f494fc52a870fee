"""
API request and response models for the backoffice REST endpoints.

These Pydantic v2 models define the HTTP transport contract for the API layer.
They are intentionally separate from the dataclasses in auth/models.py and
audit/models.py, which own the internal domain representation. Route handlers
map between the two via the from_* factory classmethods below.

Separation of concerns: auth/ models = domain truth; api/ models = API contract.
"""

from __future__ import annotations

import json
from enum import Enum
from typing import Annotated, Any, Optional

from pydantic import BaseModel, ConfigDict, Field, StringConstraints, field_validator

from audit.models import AuditLog
from auth.models import AuthTokens, Permission, Role, TokenClaims, User

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

PERMISSION_PATTERN = r"^[a-z_*]+:[a-z_*]+$"

# Applies the "resource:action" pattern to every element of a list.
_PermissionName = Annotated[str, Field(pattern=PERMISSION_PATTERN, max_length=101)]

# Identity fields are trimmed. Passwords are never declared with this type:
# leading and trailing spaces are part of the secret.
_Trimmed = Annotated[str, StringConstraints(strip_whitespace=True)]


def _dedupe(values: list) -> list[str]:
    """Deduplicate while preserving original order."""
    seen: set[str] = set()
    result: list[str] = []
    for v in values:
        s = str(v).strip()
        if s not in seen:
            seen.add(s)
            result.append(s)
    return result


# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------


class UserStatusEnum(str, Enum):
    active = "active"
    inactive = "inactive"
    suspended = "suspended"


# ---------------------------------------------------------------------------
# Auth
# ---------------------------------------------------------------------------


class LoginRequest(BaseModel):
    """Request body for POST /api/v1/auth/login.

    tenant_id is optional: without it the email must be unique across
    tenants for the login to succeed.
    """

    email: _Trimmed = Field(min_length=3, max_length=255)
    password: str = Field(min_length=1, max_length=255)
    tenant_id: Optional[_Trimmed] = Field(default=None, max_length=36)


class RefreshRequest(BaseModel):
    """Request body for POST /api/v1/auth/refresh. Falls back to the cookie."""

    refresh_token: Optional[str] = Field(default=None, max_length=4096)


class TokenResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    access_token: str
    refresh_token: str
    token_type: str = "bearer"  # noqa: S105
    expires_in: int

    @classmethod
    def from_tokens(cls, tokens: AuthTokens) -> TokenResponse:
        return cls(
            access_token=tokens.access_token,
            refresh_token=tokens.refresh_token,
            token_type=tokens.token_type,
            expires_in=tokens.expires_in,
        )


class UserResponse(BaseModel):
    """Public view of a user. Never carries the password hash."""

    model_config = ConfigDict(frozen=True)

    id: str
    tenant_id: str
    email: str
    first_name: str
    last_name: str
    status: str
    created_at: str
    updated_at: str
    last_login_at: Optional[str] = None
    roles: list[str] = Field(default_factory=list)

    @classmethod
    def from_user(cls, user: User, roles: Optional[list[Role]] = None) -> UserResponse:
        return cls(
            id=user.id or "",
            tenant_id=user.tenant_id,
            email=user.email,
            first_name=user.first_name,
            last_name=user.last_name,
            status=user.status,
            created_at=user.created_at or "",
            updated_at=user.updated_at or "",
            last_login_at=user.last_login_at,
            roles=[r.name for r in roles or []],
        )


class LoginResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    user: UserResponse
    tokens: TokenResponse


class RefreshResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    tokens: TokenResponse


class MeResponse(BaseModel):
    """Identity carried by the caller's access token."""

    model_config = ConfigDict(frozen=True)

    user_id: str
    tenant_id: str
    email: str
    permissions: list[str] = Field(default_factory=list)

    @classmethod
    def from_claims(cls, claims: TokenClaims, permissions: frozenset[str]) -> MeResponse:
        return cls(
            user_id=claims.user_id,
            tenant_id=claims.tenant_id,
            email=claims.email,
            permissions=sorted(permissions),
        )


class MessageResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    message: str


# ---------------------------------------------------------------------------
# Users
# ---------------------------------------------------------------------------


class UserCreate(BaseModel):
    """Request body for POST /api/v1/users. The tenant is the caller's."""

    email: _Trimmed = Field(min_length=3, max_length=255)
    password: str = Field(min_length=8, max_length=255)
    first_name: _Trimmed = Field(default="", max_length=100)
    last_name: _Trimmed = Field(default="", max_length=100)
    role_ids: list[str] = Field(default_factory=list, max_length=50)

    @field_validator("email")
    @classmethod
    def require_at_sign(cls, value: str) -> str:
        if "@" not in value:
            raise ValueError("email must contain '@'")
        return value

    @field_validator("role_ids", mode="before")
    @classmethod
    def dedupe_role_ids(cls, values: list) -> list[str]:
        return _dedupe(values)


class UserPatch(BaseModel):
    """Request body for PATCH /api/v1/users/{id}. Omitted fields are unchanged."""

    first_name: Optional[_Trimmed] = Field(default=None, max_length=100)
    last_name: Optional[_Trimmed] = Field(default=None, max_length=100)
    status: Optional[UserStatusEnum] = None
    password: Optional[str] = Field(default=None, min_length=8, max_length=255)
    role_ids: Optional[list[str]] = Field(default=None, max_length=50)

    @field_validator("role_ids", mode="before")
    @classmethod
    def dedupe_role_ids(cls, values: Optional[list]) -> Optional[list[str]]:
        return None if values is None else _dedupe(values)


class UserListResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    items: list[UserResponse]
    total: int
    limit: int
    offset: int


# ---------------------------------------------------------------------------
# Roles and permissions
# ---------------------------------------------------------------------------


class RoleCreate(BaseModel):
    """Request body for POST /api/v1/roles. Permissions by "resource:action" name."""

    model_config = ConfigDict(str_strip_whitespace=True)

    name: str = Field(min_length=1, max_length=100)
    description: str = Field(default="", max_length=500)
    permissions: list[_PermissionName] = Field(default_factory=list, max_length=100)

    @field_validator("permissions", mode="before")
    @classmethod
    def dedupe_permissions(cls, values: list) -> list[str]:
        return _dedupe(values)


class RolePatch(BaseModel):
    """Request body for PATCH /api/v1/roles/{id}. permissions replaces the set."""

    model_config = ConfigDict(str_strip_whitespace=True)

    name: Optional[str] = Field(default=None, min_length=1, max_length=100)
    description: Optional[str] = Field(default=None, max_length=500)
    permissions: Optional[list[_PermissionName]] = Field(default=None, max_length=100)

    @field_validator("permissions", mode="before")
    @classmethod
    def dedupe_permissions(cls, values: Optional[list]) -> Optional[list[str]]:
        return None if values is None else _dedupe(values)


class RoleResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    tenant_id: str
    name: str
    description: str
    is_system: bool
    permissions: list[str]
    created_at: str
    updated_at: str

    @classmethod
    def from_role(cls, role: Role) -> RoleResponse:
        return cls(
            id=role.id or "",
            tenant_id=role.tenant_id,
            name=role.name,
            description=role.description,
            is_system=role.is_system,
            permissions=list(role.permissions),
            created_at=role.created_at or "",
            updated_at=role.updated_at or "",
        )


class PermissionResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    name: str
    resource: str
    action: str
    description: str

    @classmethod
    def from_permission(cls, permission: Permission) -> PermissionResponse:
        return cls(
            id=permission.id or "",
            name=permission.name,
            resource=permission.resource,
            action=permission.action,
            description=permission.description,
        )


# ---------------------------------------------------------------------------
# Audit
# ---------------------------------------------------------------------------


class AuditLogResponse(BaseModel):
    """One audit entry. old_value / new_value are decoded JSON snapshots."""

    model_config = ConfigDict(frozen=True)

    id: str
    tenant_id: str
    user_id: Optional[str]
    action: str
    resource: str
    resource_id: Optional[str]
    old_value: Any = None
    new_value: Any = None
    ip_address: str
    user_agent: str
    created_at: str

    @classmethod
    def from_entry(cls, entry: AuditLog) -> AuditLogResponse:
        return cls(
            id=entry.id or "",
            tenant_id=entry.tenant_id,
            user_id=entry.user_id,
            action=entry.action,
            resource=entry.resource,
            resource_id=entry.resource_id,
            old_value=json.loads(entry.old_value) if entry.old_value else None,
            new_value=json.loads(entry.new_value) if entry.new_value else None,
            ip_address=entry.ip_address,
            user_agent=entry.user_agent,
            created_at=entry.created_at,
        )


class AuditLogListResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    items: list[AuditLogResponse]
    total: int
    limit: int
    offset: int


# ---------------------------------------------------------------------------
# Dashboard
# ---------------------------------------------------------------------------


class ActivityItem(BaseModel):
    """One line of the dashboard activity feed."""

    model_config = ConfigDict(frozen=True)

    action: str
    resource: str
    user_email: str = ""
    created_at: str


class DashboardStatsResponse(BaseModel):
    """Response for GET /api/v1/dashboard/stats."""

    model_config = ConfigDict(frozen=True)

    total_users: int
    active_users: int
    total_roles: int
    recent_logins: int
    users_by_status: dict[str, int]
    recent_activity: list[ActivityItem]


# ---------------------------------------------------------------------------
# Errors and health
# ---------------------------------------------------------------------------


class ErrorDetail(BaseModel):
    """Machine-readable error payload."""

    model_config = ConfigDict(frozen=True)

    code: str
    message: str
    detail: Optional[str] = None


class ErrorResponse(BaseModel):
    """Top-level error envelope returned on 4xx/5xx responses."""

    model_config = ConfigDict(frozen=True)

    error: ErrorDetail


class HealthResponse(BaseModel):
    """Response for GET /api/v1/health."""

    model_config = ConfigDict(frozen=True)

    status: str = "healthy"
    version: str
    components: dict[str, str] = Field(default_factory=dict)
