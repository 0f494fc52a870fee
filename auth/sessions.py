"""
auth/sessions.py -- Session Manager: refresh-token lifecycle.

Binds every refresh token to a revocable session row and makes each token
single-use: a successful refresh retires the presented token and issues a
new pair.

Refresh decision order (first failing check wins):
  1. TokenEngine.validate(token)         -> TokenExpired / InvalidToken
  2. session row for digest(token)       -> missing: InvalidToken
  3. row revoked                         -> InvalidToken
  4. row already rotated                 -> RefreshTokenReused (an InvalidToken);
                                            with reuse detection on, every
                                            session of the owner is revoked
  5. row expired                         -> TokenExpired
  6. owner missing / not active          -> InvalidToken; the row is revoked
  7. compare-and-set rotation loses race -> InvalidToken

Reuse grace window:
  Two clients refreshing the same token at once are not an attack. The loser
  either fails the compare-and-set (step 7) or, if it reads the row after the
  winner committed, sees it as rotated (step 4). A row rotated less than
  reuse_grace_seconds ago is therefore rejected with plain InvalidToken and
  the owner's sessions are left alone, so the winner's new pair stays usable.
  A stolen token replayed inside that window escapes the revoke-all; set
  REFRESH_REUSE_GRACE_SECONDS=0 to trade that for strict detection.

Every timestamp written to a session row (created_at, expires_at,
rotated_at, revoked_at) comes from the TokenEngine clock.

Data-store failures surface as InternalError.

Layer rule: no imports from api/, audit/, or cache/.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta

from sqlalchemy.exc import SQLAlchemyError

from auth.errors import InvalidToken, RefreshTokenReused, TokenExpired, store_errors
from auth.models import AuthTokens, Session, User
from auth.session_store import SessionStore
from auth.store import UserStore
from auth.tokens import TokenEngine
from core.db import to_iso

logger = logging.getLogger("backoffice.auth.sessions")


class SessionManager:
    def __init__(
        self,
        sessions: SessionStore,
        users: UserStore,
        tokens: TokenEngine,
        reuse_detection: bool = True,
        reuse_grace_seconds: float = 5.0,
    ) -> None:
        self._sessions = sessions
        self._users = users
        self._tokens = tokens
        self.reuse_detection = reuse_detection
        self.reuse_grace = timedelta(seconds=reuse_grace_seconds)

    def _now(self) -> str:
        return to_iso(self._tokens.now())

    def _new_session(self, user: User, refresh_token: str, ip_address: str, user_agent: str) -> Session:
        now = self._tokens.now()
        return Session(
            user_id=user.id,
            token_hash=self._tokens.hash_token(refresh_token),
            expires_at=to_iso(now + self._tokens.refresh_ttl),
            created_at=to_iso(now),
            ip_address=ip_address,
            user_agent=user_agent,
        )

    def create(self, user: User, ip_address: str = "", user_agent: str = "") -> tuple[Session, AuthTokens]:
        """Mint a token pair for user and persist the refresh session.

        The pair is only returned once the session row is committed, so no
        caller ever holds a refresh token that refresh() cannot serve.
        """
        tokens = self._tokens.issue_pair(user)
        with store_errors("session create"):
            session = self._sessions.create(self._new_session(user, tokens.refresh_token, ip_address, user_agent))
        return session, tokens

    def refresh(self, refresh_token: str, ip_address: str | None = None, user_agent: str | None = None) -> AuthTokens:
        """Rotate refresh_token into a fresh token pair."""
        self._tokens.validate(refresh_token)

        with store_errors("session lookup"):
            session = self._sessions.get_by_token_hash(self._tokens.hash_token(refresh_token))
        if session is None:
            raise InvalidToken()
        if session.revoked_at is not None:
            raise InvalidToken()
        if session.rotated_at is not None:
            if self._within_grace(session):
                logger.info("Refresh of session %s arrived just after its rotation", session.id)
                raise InvalidToken()
            self._handle_reuse(session)
            raise RefreshTokenReused(session.user_id)
        if session.is_expired(self._tokens.now()):
            raise TokenExpired()

        with store_errors("user lookup"):
            user = self._users.get_by_id(session.user_id)
        if user is None or not user.is_active:
            logger.info("Refresh refused: owner of session %s is missing or not active", session.id)
            with store_errors("session revoke"):
                self._sessions.revoke(session.id, now=self._now())
            raise InvalidToken()

        tokens = self._tokens.issue_pair(user)
        successor = self._new_session(
            user,
            tokens.refresh_token,
            session.ip_address if ip_address is None else ip_address,
            session.user_agent if user_agent is None else user_agent,
        )
        with store_errors("session rotate"):
            rotated = self._sessions.rotate(session, successor, now=successor.created_at)
        if rotated is None:
            # A concurrent refresh of the same token won the compare-and-set.
            logger.info("Refresh lost rotation race for session %s", session.id)
            raise InvalidToken()
        return tokens

    def _within_grace(self, session: Session) -> bool:
        return self._tokens.now() - datetime.fromisoformat(session.rotated_at) < self.reuse_grace

    def _handle_reuse(self, session: Session) -> None:
        logger.warning("Rotated refresh token replayed for user %s (session %s)", session.user_id, session.id)
        if not self.reuse_detection:
            return
        with store_errors("session revoke"):
            revoked = self._sessions.revoke_by_user(session.user_id, now=self._now())
        logger.warning("Revoked %d session(s) for user %s after refresh-token reuse", revoked, session.user_id)

    def discard(self, session_id: str) -> None:
        """Best-effort revoke of a single session (login rollback path)."""
        try:
            self._sessions.revoke(session_id, now=self._now())
        except SQLAlchemyError:
            logger.warning("Could not revoke session %s", session_id, exc_info=True)

    def revoke(self, user_id: str) -> int:
        """Revoke every session of user_id. Returns sessions affected."""
        with store_errors("session revoke"):
            return self._sessions.revoke_by_user(user_id, now=self._now())

    def purge_expired(self) -> int:
        """Delete expired session rows. Returns rows removed."""
        with store_errors("session purge"):
            removed = self._sessions.delete_expired(self._tokens.now())
        if removed:
            logger.info("Purged %d expired session(s)", removed)
        return removed
