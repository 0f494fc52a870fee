"""
api/routes/v1/auth.py -- Authentication REST endpoints.

Routes:
  POST /api/v1/auth/login     -- password login; returns {user, tokens}, sets cookies
  POST /api/v1/auth/refresh   -- rotate a refresh token (body or cookie)
  POST /api/v1/auth/logout    -- revoke every session of the caller; clears cookies
  GET  /api/v1/auth/me        -- identity and effective permissions (requires auth)

Security:
  [H2] POST /login and /refresh are rate-limited per IP (LOGIN_RATE_LIMIT,
       REFRESH_RATE_LIMIT).
  [C1] AuthService.login() provides timing equalization -- use it, never inline
       a lookup + verify.
  [M5] Cache-Control: no-store on every response that carries tokens.

AuthError raised by the service propagates to the handler in api/main.py,
which renders the {"error": {...}} envelope with the error's status code.
"""

from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse

from api.limiter import limiter, login_limit, refresh_limit
from api.models import (
    LoginRequest,
    LoginResponse,
    MeResponse,
    MessageResponse,
    RefreshRequest,
    RefreshResponse,
    TokenResponse,
    UserResponse,
)
from auth.dependencies import client_info, get_current_claims
from auth.errors import InvalidToken, store_errors
from auth.models import TokenClaims
from auth.service import AuthService
from auth.tokens import REFRESH_COOKIE, clear_auth_cookies, set_auth_cookies
from core.config import get_settings

# Auth policy:
# - POST /api/v1/auth/login:    public -- login endpoint must be unauthenticated
# - POST /api/v1/auth/refresh:  public -- the refresh token is the credential
# - POST /api/v1/auth/logout:   requires auth (get_current_claims)
# - GET  /api/v1/auth/me:       requires auth (get_current_claims)
router = APIRouter()


@limiter.limit(login_limit)  # [H2] must be ABOVE @router to preserve FastAPI introspection
@router.post("/auth/login", response_model=LoginResponse)
def login(request: Request, body: LoginRequest) -> JSONResponse:
    """Authenticate with email and password; return a token pair and set cookies.

    Wrong email and wrong password both yield 401 invalid_credentials. An
    inactive or suspended account yields 403 user_inactive, but only after
    the correct password was presented.
    """
    service: AuthService = request.app.state.auth_service
    ip_address, user_agent = client_info(request)
    result = service.login(body.email, body.password, ip_address, user_agent, tenant_id=body.tenant_id)
    with store_errors("user roles lookup"):
        with_roles = service.users.get_user_roles(result.user.id)

    resp = JSONResponse(
        status_code=200,
        content=LoginResponse(
            user=UserResponse.from_user(result.user, with_roles),
            tokens=TokenResponse.from_tokens(result.tokens),
        ).model_dump(),
    )
    set_auth_cookies(resp, result.tokens, get_settings())
    resp.headers["Cache-Control"] = "no-store"  # [M5]
    return resp


@limiter.limit(refresh_limit)  # [H2]
@router.post("/auth/refresh", response_model=RefreshResponse)
def refresh(request: Request, body: Optional[RefreshRequest] = None) -> JSONResponse:
    """Exchange a refresh token for a new pair. The presented token is retired.

    The token is read from the JSON body, else from the refresh_token cookie.
    Every failure is a 401, including a token whose owner has since been
    deactivated or deleted.
    """
    service: AuthService = request.app.state.auth_service
    token = (body.refresh_token if body is not None else None) or request.cookies.get(REFRESH_COOKIE)
    if not token:
        raise InvalidToken("Missing refresh token.")
    ip_address, user_agent = client_info(request)
    tokens = service.refresh_tokens(token, ip_address=ip_address, user_agent=user_agent)

    resp = JSONResponse(
        status_code=200,
        content=RefreshResponse(tokens=TokenResponse.from_tokens(tokens)).model_dump(),
    )
    set_auth_cookies(resp, tokens, get_settings())
    resp.headers["Cache-Control"] = "no-store"  # [M5]
    return resp


@router.post("/auth/logout", response_model=MessageResponse)
def logout(request: Request, claims: TokenClaims = Depends(get_current_claims)) -> JSONResponse:
    """Revoke every session of the caller and clear the auth cookies.

    Idempotent: a second logout with a still-valid access token succeeds and
    revokes nothing. Access tokens already issued stay valid until they expire.
    """
    service: AuthService = request.app.state.auth_service
    ip_address, user_agent = client_info(request)
    service.logout(claims.user_id, ip_address, user_agent)
    resp = JSONResponse(content=MessageResponse(message="Logged out.").model_dump())
    clear_auth_cookies(resp)
    return resp


@router.get("/auth/me", response_model=MeResponse)
def me(request: Request, claims: TokenClaims = Depends(get_current_claims)) -> MeResponse:
    """Return the identity carried by the access token plus effective permissions."""
    service: AuthService = request.app.state.auth_service
    return MeResponse.from_claims(claims, service.permissions.permissions_for(claims.user_id))
