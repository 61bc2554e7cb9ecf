from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, Header, Path, Query, Request

from authcentral.api.schemas import (
    AddPermissionRequest,
    AssignRoleRequest,
    AuditEntryResponse,
    CreatePermissionRequest,
    CreateRoleRequest,
    Envelope,
    JwksResponse,
    LoginRequest,
    LoginResponse,
    LogoutRequest,
    PermissionResponse,
    PublicProfile,
    RefreshResponse,
    RefreshTokenRequest,
    RegisterRequest,
    RoleDetailResponse,
    RoleResponse,
    SessionUser,
    UserDetail,
    UserStatusRequest,
    UserSummary,
    VerifiedUser,
    VerifyRequest,
    VerifyResponse,
)
from authcentral.logging import get_logger
from authcentral.service.audit import RequestMeta
from authcentral.service.auth import AuthContext
from authcentral.service.runtime import get_runtime

logger = get_logger(__name__)

router = APIRouter(prefix="/api")


def _request_meta(request: Request) -> RequestMeta:
    return RequestMeta(
        ip_address=request.client.host if request.client else None,
        user_agent=request.headers.get("user-agent"),
    )


async def get_principal(
    request: Request,
    authorization: Optional[str] = Header(None),
) -> AuthContext:
    """Resolve the bearer token into an authenticated caller.

    The principal is stashed on ``request.state`` so the error handlers can
    attribute failed requests in the audit log.
    """
    runtime = get_runtime()
    meta = _request_meta(request)
    ctx = await runtime.auth.authenticate(
        authorization, request=meta, resource=request.url.path
    )
    request.state.principal = ctx
    request.state.request_meta = meta
    return ctx


def require_permissions(*required: str):
    """Dependency factory: the caller must hold at least one of ``required``."""

    async def _dependency(
        request: Request, principal: AuthContext = Depends(get_principal)
    ) -> AuthContext:
        get_runtime().auth.require_permissions(
            principal,
            required,
            request=_request_meta(request),
            resource=request.url.path,
        )
        return principal

    return _dependency


# auth


@router.post("/auth/register", response_model=Envelope, status_code=201, tags=["auth"])
async def register(body: RegisterRequest, request: Request):
    """Create a user account and grant it the default role.

    Raises:
        400: Missing fields, weak password or an email that is already taken
    """
    runtime = get_runtime()
    user = await runtime.auth.register(
        body.email,
        body.password,
        first_name=body.first_name,
        last_name=body.last_name,
        request=_request_meta(request),
    )
    return Envelope(
        success=True,
        message="User registered successfully",
        data=PublicProfile.from_user(user),
    )


@router.post("/auth/login", response_model=Envelope, tags=["auth"])
async def login(body: LoginRequest, request: Request):
    """Exchange email and password for an access token and a refresh token.

    Raises:
        401: Unknown email or wrong password (indistinguishable)
        403: Account disabled
        423: Account locked after repeated failures
    """
    runtime = get_runtime()
    result = await runtime.auth.login(
        body.email, body.password, request=_request_meta(request)
    )
    return Envelope(
        success=True,
        data=LoginResponse(
            user=SessionUser.from_access(result.user, result.access),
            access_token=result.access_token.token,
            refresh_token=result.refresh_token,
            expires_in=result.access_token.expires_in,
        ),
    )


@router.post("/auth/refresh-token", response_model=Envelope, tags=["auth"])
async def refresh_token(body: RefreshTokenRequest, request: Request):
    runtime = get_runtime()
    issued = await runtime.auth.refresh(body.refresh_token, request=_request_meta(request))
    return Envelope(
        success=True,
        data=RefreshResponse(access_token=issued.token, expires_in=issued.expires_in),
    )


@router.post("/auth/logout", response_model=Envelope, tags=["auth"])
async def logout(
    request: Request,
    body: Optional[LogoutRequest] = None,
    principal: AuthContext = Depends(get_principal),
):
    """Revoke the presented access token and, when given, the refresh token."""
    runtime = get_runtime()
    await runtime.auth.logout(
        principal,
        body.refresh_token if body else None,
        request=_request_meta(request),
    )
    return Envelope(success=True, message="Logged out successfully")


@router.get("/auth/me", response_model=Envelope, tags=["auth"])
async def me(principal: AuthContext = Depends(get_principal)):
    runtime = get_runtime()
    user, access = await runtime.auth.me(principal)
    return Envelope(success=True, data=UserDetail.from_access(user, access))


# verification for other services


@router.post("/verify", response_model=Envelope, tags=["verify"])
async def verify(body: VerifyRequest):
    """Validate a token on behalf of another service.

    Signature, expiry and revocation are all checked; a blacklist that
    cannot be reached yields 503, never a positive answer.
    """
    runtime = get_runtime()
    claims = await runtime.auth.verify_token(body.token)
    return Envelope(
        success=True,
        data=VerifyResponse(
            user=VerifiedUser(
                id=claims.sub,
                email=claims.email,
                roles=claims.roles,
                permissions=claims.permissions,
            ),
            expires_at=claims.expires_at,
        ),
    )


@router.get("/.well-known/jwks.json", response_model=JwksResponse, tags=["verify"])
async def jwks():
    return JwksResponse(
        keys=[],
        message="This endpoint will contain public keys when using asymmetric signing",
        note="Tokens are signed with HS256. Other services should use the /api/verify endpoint",
    )


# users


@router.get("/users", response_model=Envelope, tags=["users"])
async def list_users(
    limit: int = Query(100, ge=1, le=500),
    offset: int = Query(0, ge=0),
    principal: AuthContext = Depends(require_permissions("users:read")),
):
    runtime = get_runtime()
    users = await runtime.rbac.list_users(limit=limit, offset=offset)
    return Envelope(success=True, data=[UserSummary.from_user(u) for u in users])


@router.get("/users/{user_id}", response_model=Envelope, tags=["users"])
async def get_user(
    user_id: str = Path(..., max_length=64),
    principal: AuthContext = Depends(require_permissions("users:read")),
):
    runtime = get_runtime()
    user, access = await runtime.rbac.get_user(user_id)
    return Envelope(success=True, data=UserDetail.from_access(user, access))


@router.post("/users/{user_id}/roles", response_model=Envelope, tags=["users"])
async def assign_user_role(
    body: AssignRoleRequest,
    request: Request,
    user_id: str = Path(..., max_length=64),
    principal: AuthContext = Depends(require_permissions("users:write")),
):
    """Grant a role by name. Granting a role the user already holds is a no-op."""
    runtime = get_runtime()
    await runtime.rbac.assign_role(
        user_id,
        body.role_name,
        actor_id=principal.user_id,
        request=_request_meta(request),
    )
    return Envelope(success=True, message="Role assigned successfully")


@router.delete("/users/{user_id}/roles/{role_name}", response_model=Envelope, tags=["users"])
async def remove_user_role(
    request: Request,
    user_id: str = Path(..., max_length=64),
    role_name: str = Path(..., max_length=255),
    principal: AuthContext = Depends(require_permissions("users:write")),
):
    runtime = get_runtime()
    await runtime.rbac.remove_role(
        user_id,
        role_name,
        actor_id=principal.user_id,
        request=_request_meta(request),
    )
    return Envelope(success=True, message="Role removed successfully")


@router.post("/users/{user_id}/status", response_model=Envelope, tags=["users"])
async def set_user_status(
    body: UserStatusRequest,
    request: Request,
    user_id: str = Path(..., max_length=64),
    principal: AuthContext = Depends(require_permissions("users:write")),
):
    """Activate or deactivate an account; deactivation revokes its refresh tokens."""
    runtime = get_runtime()
    user = await runtime.rbac.set_user_active(
        user_id,
        body.is_active,
        actor_id=principal.user_id,
        request=_request_meta(request),
    )
    return Envelope(success=True, data=UserSummary.from_user(user))


@router.post("/users/{user_id}/revoke-tokens", response_model=Envelope, tags=["users"])
async def revoke_user_tokens(
    request: Request,
    user_id: str = Path(..., max_length=64),
    principal: AuthContext = Depends(require_permissions("users:write")),
):
    runtime = get_runtime()
    revoked = await runtime.rbac.revoke_sessions(
        user_id, actor_id=principal.user_id, request=_request_meta(request)
    )
    return Envelope(success=True, data={"revoked": revoked})


@router.get("/users/{user_id}/audit-logs", response_model=Envelope, tags=["users"])
async def user_audit_logs(
    user_id: str = Path(..., max_length=64),
    limit: int = Query(50, ge=1, le=500),
    principal: AuthContext = Depends(require_permissions("users:read")),
):
    runtime = get_runtime()
    entries = await runtime.rbac.audit_log(user_id, limit=limit)
    return Envelope(
        success=True, data=[AuditEntryResponse.from_entry(e) for e in entries]
    )


# roles


@router.get("/roles", response_model=Envelope, tags=["roles"])
async def list_roles(principal: AuthContext = Depends(require_permissions("roles:read"))):
    runtime = get_runtime()
    roles = await runtime.rbac.list_roles()
    return Envelope(success=True, data=[RoleResponse.from_role(r) for r in roles])


@router.post("/roles", response_model=Envelope, status_code=201, tags=["roles"])
async def create_role(
    body: CreateRoleRequest,
    request: Request,
    principal: AuthContext = Depends(require_permissions("roles:write")),
):
    runtime = get_runtime()
    role = await runtime.rbac.create_role(
        body.name,
        body.description,
        actor_id=principal.user_id,
        request=_request_meta(request),
    )
    return Envelope(success=True, data=RoleResponse.from_role(role))


@router.get("/roles/{role_id}", response_model=Envelope, tags=["roles"])
async def get_role(
    role_id: str = Path(..., max_length=64),
    principal: AuthContext = Depends(require_permissions("roles:read")),
):
    runtime = get_runtime()
    detail = await runtime.rbac.get_role(role_id)
    role = detail.role
    return Envelope(
        success=True,
        data=RoleDetailResponse(
            id=role.id,
            name=role.name,
            description=role.description,
            created_at=role.created_at,
            permissions=[PermissionResponse.from_permission(p) for p in detail.permissions],
        ),
    )


@router.delete("/roles/{role_id}", response_model=Envelope, tags=["roles"])
async def delete_role(
    request: Request,
    role_id: str = Path(..., max_length=64),
    principal: AuthContext = Depends(require_permissions("roles:delete")),
):
    runtime = get_runtime()
    await runtime.rbac.delete_role(
        role_id, actor_id=principal.user_id, request=_request_meta(request)
    )
    return Envelope(success=True, message="Role deleted successfully")


@router.post("/roles/{role_id}/permissions", response_model=Envelope, tags=["roles"])
async def add_role_permission(
    body: AddPermissionRequest,
    request: Request,
    role_id: str = Path(..., max_length=64),
    principal: AuthContext = Depends(require_permissions("roles:write")),
):
    runtime = get_runtime()
    await runtime.rbac.add_permission_to_role(
        role_id,
        body.permission_id,
        actor_id=principal.user_id,
        request=_request_meta(request),
    )
    return Envelope(success=True, message="Permission assigned to role successfully")


@router.delete(
    "/roles/{role_id}/permissions/{permission_id}", response_model=Envelope, tags=["roles"]
)
async def remove_role_permission(
    request: Request,
    role_id: str = Path(..., max_length=64),
    permission_id: str = Path(..., max_length=64),
    principal: AuthContext = Depends(require_permissions("roles:write")),
):
    runtime = get_runtime()
    await runtime.rbac.remove_permission_from_role(
        role_id,
        permission_id,
        actor_id=principal.user_id,
        request=_request_meta(request),
    )
    return Envelope(success=True, message="Permission removed from role successfully")


# permissions


@router.get("/permissions", response_model=Envelope, tags=["permissions"])
async def list_permissions(
    principal: AuthContext = Depends(require_permissions("permissions:read")),
):
    runtime = get_runtime()
    perms = await runtime.rbac.list_permissions()
    return Envelope(
        success=True, data=[PermissionResponse.from_permission(p) for p in perms]
    )


@router.post("/permissions", response_model=Envelope, status_code=201, tags=["permissions"])
async def create_permission(
    body: CreatePermissionRequest,
    request: Request,
    principal: AuthContext = Depends(require_permissions("permissions:write")),
):
    runtime = get_runtime()
    perm = await runtime.rbac.create_permission(
        body.name,
        body.resource,
        body.action,
        body.description,
        actor_id=principal.user_id,
        request=_request_meta(request),
    )
    return Envelope(success=True, data=PermissionResponse.from_permission(perm))


@router.delete("/permissions/{permission_id}", response_model=Envelope, tags=["permissions"])
async def delete_permission(
    request: Request,
    permission_id: str = Path(..., max_length=64),
    principal: AuthContext = Depends(require_permissions("permissions:write")),
):
    runtime = get_runtime()
    await runtime.rbac.delete_permission(
        permission_id, actor_id=principal.user_id, request=_request_meta(request)
    )
    return Envelope(success=True, message="Permission deleted successfully")
