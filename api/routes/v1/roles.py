"""
api/routes/v1/roles.py -- Role and permission catalog endpoints.

Routes:
  GET    /api/v1/roles          -- roles of the caller's tenant (roles:read)
  POST   /api/v1/roles          -- create a role (roles:create)
  GET    /api/v1/roles/{id}     -- role detail (roles:read)
  PATCH  /api/v1/roles/{id}     -- rename / describe / replace permissions (roles:update)
  DELETE /api/v1/roles/{id}     -- delete a non-system role (roles:delete)
  GET    /api/v1/permissions    -- global permission catalog (roles:read)

All business rules (system-role immutability, unique names, cache
invalidation, audit) live in auth/roles.py RoleService. Its AuthError
subclasses (RoleNotFound 404, RoleNameExists 409, SystemRoleError 400,
UnknownPermission 400) render through the handler in api/main.py.
"""

from __future__ import annotations

from fastapi import APIRouter, Depends, Request, Response

from api.models import PermissionResponse, RoleCreate, RolePatch, RoleResponse
from auth.dependencies import client_info, require_permission
from auth.errors import store_errors
from auth.models import TokenClaims
from auth.roles import RoleService
from auth.store import UserStore

router = APIRouter()


@router.get("/roles", response_model=list[RoleResponse])
def list_roles(
    request: Request,
    claims: TokenClaims = Depends(require_permission("roles", "read")),
) -> list[RoleResponse]:
    roles: RoleService = request.app.state.role_service
    return [RoleResponse.from_role(r) for r in roles.list_roles(claims.tenant_id)]


@router.post("/roles", response_model=RoleResponse, status_code=201)
def create_role(
    request: Request,
    body: RoleCreate,
    claims: TokenClaims = Depends(require_permission("roles", "create")),
) -> RoleResponse:
    roles: RoleService = request.app.state.role_service
    ip_address, user_agent = client_info(request)
    role = roles.create_role(
        claims.tenant_id,
        body.name,
        description=body.description,
        permissions=body.permissions,
        actor_id=claims.user_id,
        ip_address=ip_address,
        user_agent=user_agent,
    )
    return RoleResponse.from_role(role)


@router.get("/roles/{role_id}", response_model=RoleResponse)
def get_role(
    request: Request,
    role_id: str,
    claims: TokenClaims = Depends(require_permission("roles", "read")),
) -> RoleResponse:
    roles: RoleService = request.app.state.role_service
    return RoleResponse.from_role(roles.get_role(role_id, claims.tenant_id))


@router.patch("/roles/{role_id}", response_model=RoleResponse)
def update_role(
    request: Request,
    role_id: str,
    body: RolePatch,
    claims: TokenClaims = Depends(require_permission("roles", "update")),
) -> RoleResponse:
    """Update a role. A permissions list replaces the role's whole grant set."""
    roles: RoleService = request.app.state.role_service
    ip_address, user_agent = client_info(request)
    role = roles.update_role(
        role_id,
        claims.tenant_id,
        name=body.name,
        description=body.description,
        permissions=body.permissions,
        actor_id=claims.user_id,
        ip_address=ip_address,
        user_agent=user_agent,
    )
    return RoleResponse.from_role(role)


@router.delete("/roles/{role_id}", status_code=204)
def delete_role(
    request: Request,
    role_id: str,
    claims: TokenClaims = Depends(require_permission("roles", "delete")),
) -> Response:
    roles: RoleService = request.app.state.role_service
    ip_address, user_agent = client_info(request)
    roles.delete_role(role_id, claims.tenant_id, actor_id=claims.user_id, ip_address=ip_address, user_agent=user_agent)
    return Response(status_code=204)


@router.get("/permissions", response_model=list[PermissionResponse])
def list_permissions(
    request: Request,
    claims: TokenClaims = Depends(require_permission("roles", "read")),
) -> list[PermissionResponse]:
    """Return the global permission catalog, ordered by resource then action."""
    store: UserStore = request.app.state.user_store
    with store_errors("permission list"):
        permissions = store.list_permissions()
    return [PermissionResponse.from_permission(p) for p in permissions]
