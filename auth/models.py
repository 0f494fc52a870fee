"""
auth/models.py -- Domain dataclasses for authentication entities.

Pattern: Data class (pure data container, near-zero logic). Stores and
services do the work; routes map these into Pydantic response models.

Layer rule: no imports from api/, audit/, or cache/.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime


@dataclass
class User:
    """A tenant-scoped identity.

    email is stored lower-cased; uniqueness is per tenant, so the same
    address may exist in two tenants as two distinct users.
    """

    tenant_id: str
    email: str
    id: str | None = None
    password_hash: str | None = None
    first_name: str = ""
    last_name: str = ""
    status: str = "active"  # "active", "inactive", "suspended"
    created_at: str | None = None
    updated_at: str | None = None
    last_login_at: str | None = None

    @property
    def is_active(self) -> bool:
        return self.status == "active"


@dataclass
class Permission:
    """A global (resource, action) grant. "*" is a wildcard in either slot."""

    resource: str
    action: str
    id: str | None = None
    description: str = ""
    created_at: str | None = None

    @property
    def name(self) -> str:
        return f"{self.resource}:{self.action}"


@dataclass
class Role:
    tenant_id: str
    name: str
    id: str | None = None
    description: str = ""
    is_system: bool = False  # never renamed or deleted
    created_at: str | None = None
    updated_at: str | None = None
    permissions: list[str] = field(default_factory=list)  # "resource:action"


@dataclass
class Session:
    """One outstanding refresh token.

    token_hash is the HMAC digest of the refresh token; the raw value is
    never persisted. A session is active while it is neither rotated nor
    revoked and expires_at is in the future.
    """

    user_id: str
    token_hash: str
    expires_at: str
    id: str | None = None
    ip_address: str = ""
    user_agent: str = ""
    created_at: str | None = None
    rotated_at: str | None = None
    replaced_by: str | None = None  # token_hash of the superseding session
    revoked_at: str | None = None

    def is_expired(self, now: datetime) -> bool:
        return datetime.fromisoformat(self.expires_at) <= now

    @property
    def is_live(self) -> bool:
        return self.rotated_at is None and self.revoked_at is None


@dataclass(frozen=True)
class TokenClaims:
    """Decoded, verified token payload. Never persisted."""

    user_id: str
    tenant_id: str
    email: str
    issuer: str
    subject: str
    issued_at: datetime
    not_before: datetime
    expires_at: datetime
    token_id: str


@dataclass(frozen=True)
class AuthTokens:
    access_token: str
    refresh_token: str
    expires_in: int  # access token lifetime, seconds
    token_type: str = "bearer"  # noqa: S105


@dataclass(frozen=True)
class LoginResult:
    user: User
    tokens: AuthTokens
