"""
api/routes/v1/users.py -- Tenant-scoped user management endpoints.

Routes:
  GET    /api/v1/users          -- list, search and sort users of the caller's tenant (users:read)
  POST   /api/v1/users          -- create a user in the caller's tenant (users:create)
  GET    /api/v1/users/{id}     -- user detail with role names (users:read)
  PATCH  /api/v1/users/{id}     -- update names, status, password, roles (users:update)
  DELETE /api/v1/users/{id}     -- delete a user (users:delete)

Tenancy: every lookup is filtered by claims.tenant_id. A user id from another
tenant is indistinguishable from a missing one (404).

Security:
  [M4] PATCH blocks self-deactivation; DELETE blocks self-deletion.
  Leaving "active" status, a password change and deletion each revoke every
       session of the target user and drop their cached permissions, so
       outstanding refresh tokens stop working immediately.
  Role changes go through RoleService, which invalidates the permission cache.
"""

from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query, Request, Response
from sqlalchemy.exc import IntegrityError

from api.models import UserCreate, UserListResponse, UserPatch, UserResponse, UserStatusEnum
from audit.recorder import AuditRecorder
from auth.dependencies import client_info, require_permission
from auth.errors import store_errors
from auth.models import TokenClaims, User
from auth.passwords import hash_password
from auth.roles import RoleService
from auth.service import AuthService
from auth.store import USER_SORT_COLUMNS, UserStore

router = APIRouter()

_SORT_PATTERN = "^(" + "|".join(USER_SORT_COLUMNS) + ")$"


def _not_found() -> HTTPException:
    return HTTPException(status_code=404, detail={"code": "not_found", "message": "User not found."})


def _tenant_user(store: UserStore, user_id: str, tenant_id: str) -> User:
    with store_errors("user lookup"):
        user = store.get_by_id(user_id)
    if user is None or user.tenant_id != tenant_id:
        raise _not_found()
    return user


def _to_response(store: UserStore, user: User) -> UserResponse:
    with store_errors("user roles lookup"):
        roles = store.get_user_roles(user.id)
    return UserResponse.from_user(user, roles)


def _snapshot(user: User) -> dict:
    return {"email": user.email, "first_name": user.first_name, "last_name": user.last_name, "status": user.status}


@router.get("/users", response_model=UserListResponse)
def list_users(
    request: Request,
    status: Optional[UserStatusEnum] = None,
    search: Optional[str] = Query(default=None, max_length=100),
    sort: str = Query(default="email", pattern=_SORT_PATTERN),
    order: str = Query(default="asc", pattern="^(asc|desc)$"),
    limit: int = Query(default=50, ge=1, le=200),
    offset: int = Query(default=0, ge=0),
    claims: TokenClaims = Depends(require_permission("users", "read")),
) -> UserListResponse:
    """List users of the caller's tenant.

    search matches email, first and last name case-insensitively. sort is one
    of email, first_name, last_name, status, created_at, last_login_at.
    """
    store: UserStore = request.app.state.user_store
    status_value = status.value if status is not None else None
    search = search.strip() if search else None
    with store_errors("user list"):
        users = store.list_users(
            claims.tenant_id,
            status=status_value,
            search=search,
            sort=sort,
            order=order,
            limit=limit,
            offset=offset,
        )
        total = store.count_users(claims.tenant_id, status=status_value, search=search)
    return UserListResponse(
        items=[_to_response(store, u) for u in users],
        total=total,
        limit=limit,
        offset=offset,
    )


@router.post("/users", response_model=UserResponse, status_code=201)
def create_user(
    request: Request,
    body: UserCreate,
    claims: TokenClaims = Depends(require_permission("users", "create")),
) -> UserResponse:
    """Create a user in the caller's tenant, optionally with initial roles."""
    store: UserStore = request.app.state.user_store
    roles: RoleService = request.app.state.role_service
    audit: AuditRecorder = request.app.state.audit
    ip_address, user_agent = client_info(request)
    if body.role_ids:
        roles.check_role_ids(claims.tenant_id, body.role_ids)

    new_user = User(
        tenant_id=claims.tenant_id,
        email=body.email,
        password_hash=hash_password(body.password),
        first_name=body.first_name,
        last_name=body.last_name,
    )
    with store_errors("user create"):
        try:
            user_id = store.create_user(new_user)
        except IntegrityError as exc:
            raise HTTPException(
                status_code=409,
                detail={"code": "conflict", "message": "A user with that email already exists."},
            ) from exc

    if body.role_ids:
        roles.assign_roles(user_id, claims.tenant_id, body.role_ids, claims.user_id, ip_address, user_agent)

    created = _tenant_user(store, user_id, claims.tenant_id)
    audit.record(
        claims.tenant_id, claims.user_id, "user.create", "users", user_id,
        new_value=_snapshot(created), ip_address=ip_address, user_agent=user_agent,
    )
    return _to_response(store, created)


@router.get("/users/{user_id}", response_model=UserResponse)
def get_user(
    request: Request,
    user_id: str,
    claims: TokenClaims = Depends(require_permission("users", "read")),
) -> UserResponse:
    store: UserStore = request.app.state.user_store
    return _to_response(store, _tenant_user(store, user_id, claims.tenant_id))


@router.patch("/users/{user_id}", response_model=UserResponse)
def update_user(
    request: Request,
    user_id: str,
    body: UserPatch,
    claims: TokenClaims = Depends(require_permission("users", "update")),
) -> UserResponse:
    """Update a user's names, status, password or role assignments.

    [M4] A caller cannot move their own account out of "active".
    """
    store: UserStore = request.app.state.user_store
    service: AuthService = request.app.state.auth_service
    roles: RoleService = request.app.state.role_service
    audit: AuditRecorder = request.app.state.audit
    ip_address, user_agent = client_info(request)

    target = _tenant_user(store, user_id, claims.tenant_id)
    before = _snapshot(target)

    updates: dict = {}
    if body.first_name is not None:
        updates["first_name"] = body.first_name
    if body.last_name is not None:
        updates["last_name"] = body.last_name
    if body.status is not None and body.status.value != target.status:
        if target.id == claims.user_id and body.status is not UserStatusEnum.active:
            raise HTTPException(
                status_code=400,
                detail={"code": "self_deactivation", "message": "You cannot deactivate your own account."},
            )
        updates["status"] = body.status.value
    if body.password is not None:
        updates["password_hash"] = hash_password(body.password)

    if not updates and body.role_ids is None:
        raise HTTPException(
            status_code=400,
            detail={"code": "no_changes", "message": "No fields to update."},
        )
    if body.role_ids:
        roles.check_role_ids(claims.tenant_id, body.role_ids)

    if updates:
        with store_errors("user update"):
            store.update_user(user_id, **updates)
    if body.role_ids is not None:
        roles.assign_roles(user_id, claims.tenant_id, body.role_ids, claims.user_id, ip_address, user_agent)

    # Leaving "active" or changing the password ends every outstanding session.
    if updates.get("status", "active") != "active" or "password_hash" in updates:
        service.sessions.revoke(user_id)
        service.invalidate_permission_cache(user_id)

    updated = _tenant_user(store, user_id, claims.tenant_id)
    if updates:
        new_value = _snapshot(updated)
        if "password_hash" in updates:
            new_value["password"] = "changed"
        audit.record(
            claims.tenant_id, claims.user_id, "user.update", "users", user_id,
            old_value=before, new_value=new_value, ip_address=ip_address, user_agent=user_agent,
        )
    return _to_response(store, updated)


@router.delete("/users/{user_id}", status_code=204)
def delete_user(
    request: Request,
    user_id: str,
    claims: TokenClaims = Depends(require_permission("users", "delete")),
) -> Response:
    """Delete a user of the caller's tenant and revoke their sessions."""
    store: UserStore = request.app.state.user_store
    service: AuthService = request.app.state.auth_service
    audit: AuditRecorder = request.app.state.audit
    ip_address, user_agent = client_info(request)

    target = _tenant_user(store, user_id, claims.tenant_id)
    if target.id == claims.user_id:
        raise HTTPException(
            status_code=400,
            detail={"code": "self_deletion", "message": "You cannot delete your own account."},
        )

    service.sessions.revoke(user_id)
    with store_errors("user delete"):
        store.delete_user(user_id)
    service.invalidate_permission_cache(user_id)
    audit.record(
        claims.tenant_id, claims.user_id, "user.delete", "users", user_id,
        old_value=_snapshot(target), ip_address=ip_address, user_agent=user_agent,
    )
    return Response(status_code=204)
