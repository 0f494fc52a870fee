"""
tests/conftest.py -- Shared test fixtures for the backoffice test suite.

This module provides:
  - FakeClock: a settable clock injected into TokenEngine so expiry is tested
    without sleeping
  - core: function-scoped stores + services on a fresh database per test
  - api_client: module-scoped TestClient with a seeded tenant, an admin (u1,
    system role with *:*) and a user without roles (u2)

Design: Named shared-memory SQLite URIs (not plain :memory:) are required
because TestClient runs sync route handlers in a thread pool and because the
user, session and audit stores each own an Engine. Plain :memory: DBs are
per-connection and would present a blank schema to each of them. The named
URI format (file:name?mode=memory&cache=shared&uri=true) shares one
in-memory instance across all connections in the same process.

The environment must be set before any api/auth/core import: get_settings()
is cached on first call, and api.main reads it at import time.
"""

from __future__ import annotations

import asyncio
import os
import uuid
from collections.abc import Generator
from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone

# CRITICAL: configure before any project import.
os.environ.setdefault("DEBUG", "true")
os.environ.setdefault("RATE_LIMIT_ENABLED", "false")
os.environ.setdefault("ALLOWED_HOSTS", '["*"]')
os.environ.setdefault("LOG_LEVEL", "WARNING")

import pytest
from fastapi.testclient import TestClient

from api.main import app, close_state, init_state
from audit.recorder import AuditRecorder
from audit.store import AuditStore
from auth.models import Role, User
from auth.passwords import hash_password
from auth.permissions import PermissionEvaluator
from auth.roles import RoleService
from auth.service import AuthService
from auth.session_store import SessionStore
from auth.sessions import SessionManager
from auth.store import UserStore
from auth.tokens import TokenEngine
from cache.store import InMemoryPermissionCache
from core.config import get_settings

SECRET = "k" * 48
PASSWORD = "correct-horse-battery"


def memory_url(name: str) -> str:
    return f"sqlite:///file:{name}?mode=memory&cache=shared&uri=true"


class FakeClock:
    """Callable clock pinned to a settable instant."""

    def __init__(self, start: datetime | None = None) -> None:
        self.current = start or datetime(2026, 1, 1, 12, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.current

    def advance(self, seconds: float) -> None:
        self.current = self.current + timedelta(seconds=seconds)


# ---------------------------------------------------------------------------
# Service-level fixtures
# ---------------------------------------------------------------------------


@dataclass
class Core:
    clock: FakeClock
    users: UserStore
    session_store: SessionStore
    audit_store: AuditStore
    tokens: TokenEngine
    cache: InMemoryPermissionCache
    permissions: PermissionEvaluator
    audit: AuditRecorder
    sessions: SessionManager
    service: AuthService
    roles: RoleService
    tenant_id: str

    def add_user(self, email: str, password: str = PASSWORD, status: str = "active", tenant_id: str | None = None) -> User:
        user_id = self.users.create_user(
            User(
                tenant_id=tenant_id or self.tenant_id,
                email=email,
                password_hash=hash_password(password),
                status=status,
            )
        )
        return self.users.get_by_id(user_id)

    def add_role(self, name: str, permissions: list[str], is_system: bool = False, tenant_id: str | None = None) -> Role:
        catalog = {p.name: p.id for p in self.users.list_permissions()}
        role_id = self.users.create_role(
            Role(tenant_id=tenant_id or self.tenant_id, name=name, is_system=is_system),
            [catalog[p] for p in permissions],
        )
        return self.users.get_role(role_id)


@pytest.fixture
def core() -> Generator[Core, None, None]:
    """Fresh database, stores and services for a single test."""
    url = memory_url(f"core_{uuid.uuid4().hex}")
    clock = FakeClock()
    users = UserStore(url)
    session_store = SessionStore(url)
    audit_store = AuditStore(url)
    users.ensure_permissions()

    tokens = TokenEngine(SECRET, issuer="backoffice", clock=clock)
    cache = InMemoryPermissionCache()
    permissions = PermissionEvaluator(users, cache)
    audit = AuditRecorder(audit_store)
    sessions = SessionManager(session_store, users, tokens, reuse_detection=True)

    yield Core(
        clock=clock,
        users=users,
        session_store=session_store,
        audit_store=audit_store,
        tokens=tokens,
        cache=cache,
        permissions=permissions,
        audit=audit,
        sessions=sessions,
        service=AuthService(users, sessions, tokens, permissions, audit),
        roles=RoleService(users, permissions, audit),
        tenant_id=str(uuid.uuid4()),
    )

    users.close()
    session_store.close()
    audit_store.close()


# ---------------------------------------------------------------------------
# API fixtures -- one TestClient per test module for speed
# ---------------------------------------------------------------------------


def _patch_lifespan(db_url: str):
    """Return an async context manager that replaces the real lifespan.

    Wires stores and services on an isolated named in-memory database into
    app.state. The purge_task is a long-sleeping coroutine so shutdown can
    .cancel() it like the real one.
    """

    @asynccontextmanager
    async def test_lifespan(app):
        init_state(app, get_settings(), database_url=db_url)
        app.state.purge_task = asyncio.create_task(asyncio.sleep(99999))
        yield
        app.state.purge_task.cancel()
        close_state(app)

    return test_lifespan


@dataclass
class ApiContext:
    client: TestClient
    tenant_id: str
    admin_id: str
    admin_email: str
    admin_token: str
    user_id: str
    user_email: str
    user_token: str

    def auth(self, token: str) -> dict[str, str]:
        return {"Authorization": f"Bearer {token}"}


@pytest.fixture(scope="module")
def api_client(request) -> Generator[ApiContext, None, None]:
    """Yield an ApiContext for API integration tests.

    u1 (admin@example.com) holds the tenant's system "admin" role (*:*);
    u2 (user@example.com) has no roles at all. Both log in with PASSWORD.
    Tokens are minted through AuthService.login, so each module starts with
    one live session per user.
    """
    db_url = memory_url(f"api_{request.module.__name__.replace('.', '_')}")
    app.router.lifespan_context = _patch_lifespan(db_url)

    with TestClient(app, raise_server_exceptions=True) as client:
        store: UserStore = app.state.user_store
        service: AuthService = app.state.auth_service
        tenant_id = str(uuid.uuid4())

        superuser = store.get_permission("*", "*")
        admin_role = store.create_role(Role(tenant_id=tenant_id, name="admin", is_system=True), [superuser.id])
        admin_id = store.create_user(User(tenant_id=tenant_id, email="admin@example.com", password_hash=hash_password(PASSWORD)))
        store.add_user_role(admin_id, admin_role)
        user_id = store.create_user(User(tenant_id=tenant_id, email="user@example.com", password_hash=hash_password(PASSWORD)))

        yield ApiContext(
            client=client,
            tenant_id=tenant_id,
            admin_id=admin_id,
            admin_email="admin@example.com",
            admin_token=service.login("admin@example.com", PASSWORD).tokens.access_token,
            user_id=user_id,
            user_email="user@example.com",
            user_token=service.login("user@example.com", PASSWORD).tokens.access_token,
        )
