"""
auth/dependencies.py -- FastAPI Depends() helpers for authentication and authorization.

Two token sources are checked in priority order:
  1. Authorization: Bearer <token> header -- API clients.
  2. "access_token" cookie -- set by POST /auth/login for browser clients.

get_current_claims() validates the token through the AuthService on
app.state and returns TokenClaims, or raises HTTP 401.
require_permission(resource, action) builds a dependency that additionally
raises HTTP 403 when the Permission Evaluator denies the check.

Layer rule: no imports from api/, audit/, or cache/.
  auth/dependencies.py may import from fastapi (for Depends/HTTPException/Request)
  because this module is part of the FastAPI dependency injection system.
"""

from __future__ import annotations

import logging
from collections.abc import Callable

from fastapi import Depends, HTTPException, Request

from auth.errors import AuthError
from auth.models import TokenClaims
from auth.tokens import ACCESS_COOKIE

logger = logging.getLogger("backoffice.auth")


def client_info(request: Request) -> tuple[str, str]:
    """Return (client ip, user agent) for session and audit records."""
    ip_address = request.client.host if request.client else ""
    return ip_address, request.headers.get("User-Agent", "")[:512]


def get_current_claims(request: Request) -> TokenClaims:
    """Require a valid access token. Raises HTTP 401 otherwise.

    Use as a FastAPI dependency:
        @router.get("/protected")
        def route(claims: TokenClaims = Depends(get_current_claims)): ...
    """
    service = request.app.state.auth_service
    try:
        return service.authenticate(
            authorization=request.headers.get("Authorization"),
            cookie_token=request.cookies.get(ACCESS_COOKIE),
        )
    except AuthError as exc:
        logger.info("Rejected token on %s %s: %s", request.method, request.url.path, exc.code)
        raise HTTPException(
            status_code=401,
            detail={"code": exc.code, "message": exc.message},
            headers={"WWW-Authenticate": "Bearer"},
        ) from exc


def require_permission(resource: str, action: str) -> Callable[..., TokenClaims]:
    """Return a dependency that requires resource:action for the caller.

    Use as a FastAPI dependency:
        @router.get("/users")
        def route(claims: TokenClaims = Depends(require_permission("users", "read"))): ...
    """

    def dependency(request: Request, claims: TokenClaims = Depends(get_current_claims)) -> TokenClaims:
        if not request.app.state.auth_service.authorize(claims, resource, action):
            logger.info("Denied %s:%s to user %s", resource, action, claims.user_id)
            raise HTTPException(
                status_code=403,
                detail={"code": "forbidden", "message": f"Permission {resource}:{action} required."},
            )
        return claims

    return dependency
