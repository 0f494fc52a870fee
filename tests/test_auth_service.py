"""
tests/test_auth_service.py -- AuthService orchestration tests.

Covers:
  - login -> authenticate round trip (Bearer header and cookie sources)
  - wrong password / unknown email -> InvalidCredentials, no session created
  - inactive account -> UserInactive only with the correct password
  - email lookup is case-insensitive; tenant_id disambiguates duplicates
  - logout revokes sessions and is idempotent
  - audit entries are written; a failing audit sink never breaks login
  - last-login failure -> InternalError, no tokens, the new session revoked
  - refresh-token reuse is audited against the owner
"""

from __future__ import annotations

from unittest.mock import patch

import pytest
from sqlalchemy.exc import OperationalError

from auth.errors import InternalError, InvalidCredentials, InvalidToken, UserInactive
from auth.service import extract_token
from conftest import PASSWORD


def _db_error() -> OperationalError:
    return OperationalError("INSERT", {}, Exception("database is locked"))


class TestLogin:
    def test_login_then_authenticate(self, core) -> None:
        user = core.add_user("alice@example.com")
        result = core.service.login("alice@example.com", PASSWORD, "10.0.0.1", "pytest")

        assert result.user.id == user.id
        assert result.user.last_login_at is not None
        claims = core.service.authenticate(authorization=f"Bearer {result.tokens.access_token}")
        assert claims.user_id == user.id
        assert claims.tenant_id == core.tenant_id
        assert claims.email == "alice@example.com"

    def test_authenticate_from_cookie(self, core) -> None:
        core.add_user("cookie@example.com")
        tokens = core.service.login("cookie@example.com", PASSWORD).tokens
        assert core.service.authenticate(cookie_token=tokens.access_token).email == "cookie@example.com"

    def test_missing_token(self, core) -> None:
        with pytest.raises(InvalidToken):
            core.service.authenticate()

    def test_wrong_password_creates_no_session(self, core) -> None:
        core.add_user("bob@example.com")
        with pytest.raises(InvalidCredentials):
            core.service.login("bob@example.com", "not-the-password")
        assert core.session_store.count() == 0

    def test_unknown_email_same_error(self, core) -> None:
        with pytest.raises(InvalidCredentials) as excinfo:
            core.service.login("ghost@example.com", PASSWORD)
        assert excinfo.value.code == "invalid_credentials"

    def test_inactive_user_with_correct_password(self, core) -> None:
        core.add_user("carol@example.com", status="inactive")
        with pytest.raises(UserInactive):
            core.service.login("carol@example.com", PASSWORD)
        assert core.session_store.count() == 0

    def test_inactive_user_with_wrong_password(self, core) -> None:
        core.add_user("dave@example.com", status="suspended")
        with pytest.raises(InvalidCredentials):
            core.service.login("dave@example.com", "nope-nope")

    def test_email_case_insensitive(self, core) -> None:
        core.add_user("Erin@Example.com")
        assert core.service.login("  ERIN@example.COM ", PASSWORD).user.email == "erin@example.com"

    def test_same_email_in_two_tenants(self, core) -> None:
        core.add_user("shared@example.com")
        other = core.add_user("shared@example.com", tenant_id="tenant-b")

        with pytest.raises(InvalidCredentials):
            core.service.login("shared@example.com", PASSWORD)
        result = core.service.login("shared@example.com", PASSWORD, tenant_id="tenant-b")
        assert result.user.id == other.id

    def test_legacy_bcrypt_user_can_log_in(self, core) -> None:
        import bcrypt

        user = core.add_user("legacy@example.com")
        legacy = bcrypt.hashpw(PASSWORD.encode(), bcrypt.gensalt(4)).decode()
        core.users.update_user(user.id, password_hash=legacy)
        assert core.service.login("legacy@example.com", PASSWORD).user.id == user.id


class TestLogout:
    def test_logout_revokes_refresh(self, core) -> None:
        user = core.add_user("frank@example.com")
        tokens = core.service.login("frank@example.com", PASSWORD).tokens

        assert core.service.logout(user.id) == 1
        with pytest.raises(InvalidToken):
            core.service.refresh_tokens(tokens.refresh_token)

    def test_logout_idempotent(self, core) -> None:
        user = core.add_user("gina@example.com")
        core.service.login("gina@example.com", PASSWORD)
        assert core.service.logout(user.id) == 1
        assert core.service.logout(user.id) == 0


class TestAudit:
    def test_login_and_failure_audited(self, core) -> None:
        user = core.add_user("hank@example.com")
        with pytest.raises(InvalidCredentials):
            core.service.login("hank@example.com", "wrong-password", "10.0.0.9", "pytest")
        core.service.login("hank@example.com", PASSWORD, "10.0.0.9", "pytest")

        actions = [e.action for e in core.audit_store.list_events(core.tenant_id, user_id=user.id)]
        assert sorted(actions) == ["login", "login_failed"]
        entry = core.audit_store.list_events(core.tenant_id, action="login")[0]
        assert entry.ip_address == "10.0.0.9"
        assert entry.user_agent == "pytest"

    def test_audit_failure_does_not_break_login(self, core) -> None:
        core.add_user("ivy@example.com")
        with patch.object(core.audit_store, "log_event", side_effect=_db_error()):
            result = core.service.login("ivy@example.com", PASSWORD)
        assert core.service.authenticate(authorization=f"Bearer {result.tokens.access_token}")

    def test_reuse_is_audited(self, core) -> None:
        user = core.add_user("jack@example.com")
        tokens = core.service.login("jack@example.com", PASSWORD).tokens
        core.service.refresh_tokens(tokens.refresh_token)
        core.clock.advance(60)
        with pytest.raises(InvalidToken):
            core.service.refresh_tokens(tokens.refresh_token)
        assert core.audit_store.count_events(core.tenant_id, action="refresh_token_reuse", user_id=user.id) == 1


class TestPartialFailure:
    def test_last_login_failure_revokes_session(self, core) -> None:
        user = core.add_user("kim@example.com")
        with patch.object(core.users, "update_last_login", side_effect=_db_error()):
            with pytest.raises(InternalError):
                core.service.login("kim@example.com", PASSWORD)

        assert core.session_store.count() == 1
        with core.session_store.engine.connect() as conn:
            revoked = conn.exec_driver_sql("SELECT revoked_at FROM sessions WHERE user_id = ?", (user.id,)).scalar()
        assert revoked is not None
        assert core.audit_store.count_events(core.tenant_id, action="login") == 0

    def test_session_store_failure(self, core) -> None:
        core.add_user("lee@example.com")
        with patch.object(core.session_store, "create", side_effect=_db_error()):
            with pytest.raises(InternalError):
                core.service.login("lee@example.com", PASSWORD)


class TestExtractToken:
    def test_bearer_wins_over_cookie(self) -> None:
        assert extract_token("Bearer abc", "cookie") == "abc"

    def test_cookie_fallback(self) -> None:
        assert extract_token(None, "cookie") == "cookie"
        assert extract_token("Basic xyz", "cookie") == "cookie"

    def test_nothing(self) -> None:
        assert extract_token("Bearer ", None) is None
