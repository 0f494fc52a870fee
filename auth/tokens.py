"""
auth/tokens.py -- Token Engine: signed, time-bounded JWTs and cookie helpers.

Security design decisions:
  JWT: python-jose with HS256 only. Tokens are signed with SECRET_KEY and
       carry user_id, tenant_id, email plus the registered claims iss, sub,
       iat, nbf, exp and a random jti (so two tokens minted in the same
       second are still distinct values -- the session table keys on them).

  Algorithm pinning: the header alg must be exactly HS256 and jose is told to
       accept only HS256. A token claiming "none", RS256, HS512 etc. fails as
       InvalidToken -- no algorithm-confusion path exists.

  Time checks are done here rather than inside jose so the engine's injected
       clock is the single source of "now":
         now >= exp  -> TokenExpired
         now <  nbf  -> InvalidToken
       Every other failure (bad signature, malformed input, wrong issuer,
       missing claims) collapses to InvalidToken. validate() raises nothing
       else.

  Access vs refresh: same claim shape and key, different TTLs. The engine
       does not distinguish token "type"; refresh tokens are additionally
       checked against the session store by auth/sessions.py.

  Refresh-token digests: hash_token() returns HMAC-SHA256(SECRET_KEY, token).
       Sessions store the digest only, so a leaked sessions table does not
       yield usable refresh tokens.

Layer rule: no imports from api/, audit/, or cache/. Import from core/ is
allowed -- core/ is the kernel and has no reverse dependencies.
"""

from __future__ import annotations

import hashlib
import hmac
import logging
import uuid
from collections.abc import Callable
from datetime import datetime, timedelta, timezone

from jose import JWTError, jwt

from auth.errors import InvalidToken, TokenExpired
from auth.models import AuthTokens, TokenClaims, User
from core.config import Settings

logger = logging.getLogger("backoffice.auth.tokens")

ALGORITHM = "HS256"

_REQUIRED_CLAIMS = ("user_id", "tenant_id", "email", "iss", "sub", "iat", "nbf", "exp", "jti")

# jose would otherwise check exp/nbf against its own clock.
_DECODE_OPTIONS = {
    "verify_signature": True,
    "verify_aud": False,
    "verify_iat": False,
    "verify_exp": False,
    "verify_nbf": False,
    "verify_iss": True,
    "verify_sub": True,
    "verify_jti": True,
}


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class TokenEngine:
    """Mints and validates compact HS256 tokens carrying TokenClaims.

    Usage:
        engine = TokenEngine.from_settings(get_settings())
        pair = engine.issue_pair(user)
        claims = engine.validate(pair.access_token)
    """

    def __init__(
        self,
        secret_key: str,
        issuer: str = "backoffice",
        access_ttl: timedelta = timedelta(minutes=15),
        refresh_ttl: timedelta = timedelta(days=7),
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self._secret_key = secret_key
        self.issuer = issuer
        self.access_ttl = access_ttl
        self.refresh_ttl = refresh_ttl
        self._clock = clock

    @classmethod
    def from_settings(cls, settings: Settings, clock: Callable[[], datetime] = _utcnow) -> TokenEngine:
        return cls(
            secret_key=settings.secret_key,
            issuer=settings.token_issuer,
            access_ttl=timedelta(seconds=settings.access_token_ttl_seconds),
            refresh_ttl=timedelta(seconds=settings.refresh_token_ttl_seconds),
            clock=clock,
        )

    def now(self) -> datetime:
        return self._clock()

    # ------------------------------------------------------------------
    # Issue
    # ------------------------------------------------------------------

    def issue(self, user: User, ttl: timedelta) -> str:
        """Encode a signed token for user that expires ttl from now."""
        now = int(self._clock().timestamp())
        payload = {
            "user_id": user.id,
            "tenant_id": user.tenant_id,
            "email": user.email,
            "iss": self.issuer,
            "sub": user.id,
            "iat": now,
            "nbf": now,
            "exp": now + int(ttl.total_seconds()),
            "jti": uuid.uuid4().hex,
        }
        return jwt.encode(payload, self._secret_key, algorithm=ALGORITHM)

    def issue_pair(self, user: User) -> AuthTokens:
        return AuthTokens(
            access_token=self.issue(user, self.access_ttl),
            refresh_token=self.issue(user, self.refresh_ttl),
            expires_in=int(self.access_ttl.total_seconds()),
        )

    # ------------------------------------------------------------------
    # Validate
    # ------------------------------------------------------------------

    def validate(self, token: str) -> TokenClaims:
        """Verify token and return its claims.

        Raises TokenExpired or InvalidToken; nothing else.
        """
        if not isinstance(token, str) or not token:
            raise InvalidToken()
        try:
            header = jwt.get_unverified_header(token)
            if header.get("alg") != ALGORITHM:
                raise InvalidToken()
            payload = jwt.decode(
                token,
                self._secret_key,
                algorithms=[ALGORITHM],
                options=_DECODE_OPTIONS,
                issuer=self.issuer,
            )
        except (JWTError, ValueError, TypeError) as exc:
            raise InvalidToken() from exc

        if any(payload.get(name) in (None, "") for name in _REQUIRED_CLAIMS):
            raise InvalidToken()

        try:
            issued_at = _from_timestamp(payload["iat"])
            not_before = _from_timestamp(payload["nbf"])
            expires_at = _from_timestamp(payload["exp"])
        except (TypeError, ValueError, OverflowError) as exc:
            raise InvalidToken() from exc

        now = self._clock()
        if now >= expires_at:
            raise TokenExpired()
        if now < not_before:
            raise InvalidToken()

        return TokenClaims(
            user_id=str(payload["user_id"]),
            tenant_id=str(payload["tenant_id"]),
            email=str(payload["email"]),
            issuer=payload["iss"],
            subject=payload["sub"],
            issued_at=issued_at,
            not_before=not_before,
            expires_at=expires_at,
            token_id=str(payload["jti"]),
        )

    # ------------------------------------------------------------------
    # Digest
    # ------------------------------------------------------------------

    def hash_token(self, raw_token: str) -> str:
        """Return HMAC-SHA256(SECRET_KEY, raw_token) as a hex string.

        Deterministic, so the session store can look a refresh token up by
        digest in O(1) without ever storing the token itself.
        """
        return hmac.new(self._secret_key.encode(), raw_token.encode(), hashlib.sha256).hexdigest()


def _from_timestamp(value) -> datetime:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise TypeError("numeric date expected")
    return datetime.fromtimestamp(value, tz=timezone.utc)


# ---------------------------------------------------------------------------
# Cookie helpers
# ---------------------------------------------------------------------------

ACCESS_COOKIE = "access_token"
REFRESH_COOKIE = "refresh_token"  # noqa: S105


def set_auth_cookies(response, tokens: AuthTokens, settings: Settings) -> None:
    """Write both tokens as httpOnly cookies on the response.

    httponly=True: JS cannot read the cookies (XSS mitigation).
    samesite="lax": not sent on cross-site POST -- CSRF mitigation.
    secure: HTTPS only when SECURE_COOKIES=true or APP_ENV=production.
    max_age: matches each token's expiry so cookie and token expire together.
    The refresh cookie is scoped to the auth routes only.
    """
    response.set_cookie(
        ACCESS_COOKIE,
        value=tokens.access_token,
        httponly=True,
        samesite="lax",
        secure=settings.secure_cookies,
        max_age=settings.access_token_ttl_seconds,
    )
    response.set_cookie(
        REFRESH_COOKIE,
        value=tokens.refresh_token,
        httponly=True,
        samesite="lax",
        secure=settings.secure_cookies,
        max_age=settings.refresh_token_ttl_seconds,
        path="/api/v1/auth",
    )


def clear_auth_cookies(response) -> None:
    response.delete_cookie(ACCESS_COOKIE)
    response.delete_cookie(REFRESH_COOKIE, path="/api/v1/auth")
