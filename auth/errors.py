"""
auth/errors.py -- Exception taxonomy for the auth core.

Every expected, user-facing outcome is an AuthError subclass carrying the
HTTP status and machine-readable code the API layer renders. These are not
server errors and must never be logged as such.

InternalError is deliberately NOT an AuthError: it wraps data-store failures
(connectivity, constraint violations) and is rendered as a generic 500 with
no detail leaked to the client.

Layer rule: no imports from api/, audit/, or cache/.
"""

from __future__ import annotations

from collections.abc import Iterator
from contextlib import contextmanager

from sqlalchemy.exc import SQLAlchemyError


class AuthError(Exception):
    """Base class for expected auth/authorization outcomes."""

    status_code: int = 401
    code: str = "unauthorized"
    message: str = "Authentication required."

    def __init__(self, message: str | None = None) -> None:
        super().__init__(message or self.message)
        if message is not None:
            self.message = message


class InvalidCredentials(AuthError):
    code = "invalid_credentials"
    message = "Invalid email or password."


class UserNotFound(AuthError):
    code = "user_not_found"
    message = "User not found."


class UserInactive(AuthError):
    status_code = 403
    code = "user_inactive"
    message = "User account is not active."


class TokenExpired(AuthError):
    code = "token_expired"
    message = "Token has expired."


class InvalidToken(AuthError):
    code = "invalid_token"
    message = "Invalid token."


# ---------------------------------------------------------------------------
# Role management
# ---------------------------------------------------------------------------


class RoleNotFound(AuthError):
    status_code = 404
    code = "not_found"
    message = "Role not found."


class RoleNameExists(AuthError):
    status_code = 409
    code = "conflict"
    message = "A role with that name already exists."


class SystemRoleError(AuthError):
    status_code = 400
    code = "system_role"
    message = "System roles cannot be modified or deleted."


class UnknownPermission(AuthError):
    status_code = 400
    code = "unknown_permission"
    message = "One or more permissions do not exist."


class InvalidRoleAssignment(AuthError):
    status_code = 400
    code = "invalid_role"
    message = "One or more roles do not exist in this tenant."


class RefreshTokenReused(InvalidToken):
    """An already-rotated refresh token was presented again.

    Surfaces to the client exactly like InvalidToken; user_id lets the
    orchestrator record the event against the token's owner.
    """

    def __init__(self, user_id: str) -> None:
        super().__init__()
        self.user_id = user_id


class InternalError(Exception):
    """A data-store or other server-side failure. Rendered as a bare 500."""


@contextmanager
def store_errors(operation: str) -> Iterator[None]:
    """Translate SQLAlchemy failures inside the block into InternalError."""
    try:
        yield
    except SQLAlchemyError as exc:
        raise InternalError(f"{operation} failed") from exc
