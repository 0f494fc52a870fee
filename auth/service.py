"""
auth/service.py -- Auth Orchestrator: Login / Logout / Refresh / Authenticate / Authorize.

Composes the credential store, TokenEngine, SessionManager and
PermissionEvaluator. Routes talk to this class only; they never mint tokens
or touch session rows themselves.

Per-session states: Anonymous -> Authenticated (access token valid)
-> Authenticated (needs refresh) -> Revoked.

Security:
  [C1] login() always runs a password verification, against DUMMY_HASH when
       the email is unknown, so response time does not reveal which emails
       are registered. Wrong email and wrong password raise the same
       InvalidCredentials. Account status is only disclosed (UserInactive)
       to a caller who presented the correct password.

  Partial failure: tokens are returned only after the session row AND the
       last-login stamp are committed. If the stamp fails, the just-created
       session is revoked again (best effort) and InternalError propagates.

  Audit: writes are best-effort. A failed write is logged at WARNING with
       the traceback and never changes the outcome of the primary operation.

Layer rule: no imports from api/. audit/ is used through AuditRecorder only.
"""

from __future__ import annotations

import logging

from sqlalchemy.exc import SQLAlchemyError

from audit.recorder import AuditRecorder
from auth.errors import InternalError, InvalidCredentials, InvalidToken, RefreshTokenReused, UserInactive, store_errors
from auth.models import AuthTokens, LoginResult, TokenClaims
from auth.passwords import DUMMY_HASH, verify_password
from auth.permissions import PermissionEvaluator
from auth.sessions import SessionManager
from auth.store import UserStore
from auth.tokens import TokenEngine

logger = logging.getLogger("backoffice.auth")


def extract_token(authorization: str | None, cookie_token: str | None) -> str | None:
    """Return the bearer token from the Authorization header, else the cookie."""
    if authorization:
        scheme, _, value = authorization.partition(" ")
        if scheme.lower() == "bearer" and value.strip():
            return value.strip()
    return cookie_token or None


class AuthService:
    def __init__(
        self,
        users: UserStore,
        sessions: SessionManager,
        tokens: TokenEngine,
        permissions: PermissionEvaluator,
        audit: AuditRecorder,
    ) -> None:
        self.users = users
        self.sessions = sessions
        self.tokens = tokens
        self.permissions = permissions
        self.audit = audit

    # ------------------------------------------------------------------
    # Login / logout
    # ------------------------------------------------------------------

    def login(
        self,
        email: str,
        password: str,
        ip_address: str = "",
        user_agent: str = "",
        tenant_id: str | None = None,
    ) -> LoginResult:
        with store_errors("user lookup"):
            user = self.users.get_by_email(email, tenant_id=tenant_id)

        if user is None or not user.password_hash:
            # Equalize timing -- do NOT return before hashing [C1]
            verify_password(password, DUMMY_HASH)
            logger.info("Login failed: unknown email")
            raise InvalidCredentials()
        if not verify_password(password, user.password_hash):
            logger.info("Login failed: bad password for user %s", user.id)
            self.audit.record(user.tenant_id, user.id, "login_failed", "auth", ip_address=ip_address, user_agent=user_agent)
            raise InvalidCredentials()
        if not user.is_active:
            logger.info("Login refused: user %s is %s", user.id, user.status)
            raise UserInactive()

        session, tokens = self.sessions.create(user, ip_address, user_agent)
        try:
            user.last_login_at = self.users.update_last_login(user.id)
        except SQLAlchemyError as exc:
            self.sessions.discard(session.id)
            raise InternalError("last login update failed") from exc

        self.audit.record(user.tenant_id, user.id, "login", "auth", ip_address=ip_address, user_agent=user_agent)
        logger.info("User %s logged in", user.id)
        return LoginResult(user=user, tokens=tokens)

    def logout(self, user_id: str, ip_address: str = "", user_agent: str = "") -> int:
        """Revoke every session of user_id. Idempotent; returns sessions revoked."""
        revoked = self.sessions.revoke(user_id)
        with store_errors("user lookup"):
            user = self.users.get_by_id(user_id)
        if user is not None:
            self.audit.record(user.tenant_id, user_id, "logout", "auth", ip_address=ip_address, user_agent=user_agent)
        logger.info("User %s logged out (%d session(s) revoked)", user_id, revoked)
        return revoked

    # ------------------------------------------------------------------
    # Tokens
    # ------------------------------------------------------------------

    def authenticate(self, authorization: str | None = None, cookie_token: str | None = None) -> TokenClaims:
        """Validate the request's access token (Bearer header, else cookie)."""
        token = extract_token(authorization, cookie_token)
        if token is None:
            raise InvalidToken("Missing access token.")
        return self.tokens.validate(token)

    def refresh_tokens(self, refresh_token: str, ip_address: str | None = None, user_agent: str | None = None) -> AuthTokens:
        try:
            return self.sessions.refresh(refresh_token, ip_address=ip_address, user_agent=user_agent)
        except RefreshTokenReused as exc:
            with store_errors("user lookup"):
                owner = self.users.get_by_id(exc.user_id)
            if owner is not None:
                self.audit.record(
                    owner.tenant_id,
                    owner.id,
                    "refresh_token_reuse",
                    "auth",
                    ip_address=ip_address or "",
                    user_agent=user_agent or "",
                )
            raise

    # ------------------------------------------------------------------
    # Authorization
    # ------------------------------------------------------------------

    def authorize(self, claims: TokenClaims, resource: str, action: str) -> bool:
        return self.permissions.has_permission(claims.user_id, resource, action)

    def invalidate_permission_cache(self, user_id: str) -> None:
        self.permissions.invalidate(user_id)
