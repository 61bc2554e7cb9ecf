from __future__ import annotations

from typing import List, Optional, Tuple

from authcentral.logging import get_logger
from authcentral.service.audit import AuditLogger, RequestMeta
from authcentral.service.errors import (
    MissingFieldsError,
    PermissionNotFoundError,
    RoleNotFoundError,
    UserNotFoundError,
)
from authcentral.service.revocation import RevocationRegistry
from authcentral.storage.common import BoundedStore
from authcentral.storage.models import (
    AuditEntry,
    Permission,
    ResolvedAccess,
    Role,
    RoleDetail,
    User,
)

logger = get_logger(__name__)


class AccessControlService:
    """Administrative operations over users, roles and permissions.

    Callers are expected to have passed the permission gate already; nothing
    here looks at who is asking beyond recording it in the audit log.
    """

    def __init__(
        self,
        store: BoundedStore,
        revocation: RevocationRegistry,
        audit: AuditLogger,
    ) -> None:
        self.store = store
        self.revocation = revocation
        self.audit = audit

    async def _require_user(self, user_id: str) -> User:
        user = await self.store.get_user(user_id)
        if user is None:
            raise UserNotFoundError("User not found")
        return user

    async def _require_role(self, role_id: str) -> Role:
        role = await self.store.get_role(role_id)
        if role is None:
            raise RoleNotFoundError("Role not found")
        return role

    async def _require_permission(self, permission_id: str) -> Permission:
        perm = await self.store.get_permission(permission_id)
        if perm is None:
            raise PermissionNotFoundError("Permission not found")
        return perm

    # users
    async def list_users(self, *, limit: int = 100, offset: int = 0) -> List[User]:
        return await self.store.list_users(limit, offset)

    async def get_user(self, user_id: str) -> Tuple[User, ResolvedAccess]:
        user = await self._require_user(user_id)
        access = await self.store.resolve_access(user.id)
        return user, access

    async def assign_role(
        self,
        user_id: str,
        role_name: Optional[str],
        *,
        actor_id: Optional[str] = None,
        request: Optional[RequestMeta] = None,
    ) -> bool:
        """Grant ``role_name`` to a user. Granting a held role is a no-op (False)."""
        if not role_name:
            raise MissingFieldsError("roleName is required")
        await self._require_user(user_id)
        role = await self.store.get_role_by_name(role_name)
        if role is None:
            raise RoleNotFoundError("Role not found")
        added = await self.store.assign_role(user_id, role.id)
        self.audit.record(
            "assign_role", "users", "success", user_id=actor_id, request=request,
            metadata={"target_user_id": user_id, "role": role_name, "changed": added},
        )
        return added

    async def remove_role(
        self,
        user_id: str,
        role_name: str,
        *,
        actor_id: Optional[str] = None,
        request: Optional[RequestMeta] = None,
    ) -> bool:
        await self._require_user(user_id)
        role = await self.store.get_role_by_name(role_name)
        if role is None:
            raise RoleNotFoundError("Role not found")
        removed = await self.store.remove_role(user_id, role.id)
        self.audit.record(
            "remove_role", "users", "success", user_id=actor_id, request=request,
            metadata={"target_user_id": user_id, "role": role_name, "changed": removed},
        )
        return removed

    async def set_user_active(
        self,
        user_id: str,
        is_active: bool,
        *,
        actor_id: Optional[str] = None,
        request: Optional[RequestMeta] = None,
    ) -> User:
        """Enable or disable an account.

        Disabling also revokes every outstanding refresh token of the user, so
        no new access token can be minted for the account. Access tokens already
        issued stay valid until they expire.
        """
        user = await self.store.set_user_active(user_id, is_active)
        if user is None:
            raise UserNotFoundError("User not found")
        revoked = 0
        if not is_active:
            revoked = await self.revocation.revoke_all_for_user(user_id)
        self.audit.record(
            "activate_user" if is_active else "deactivate_user",
            "users",
            "success",
            user_id=actor_id,
            request=request,
            metadata={"target_user_id": user_id, "refresh_tokens_revoked": revoked},
        )
        return user

    async def revoke_sessions(
        self,
        user_id: str,
        *,
        actor_id: Optional[str] = None,
        request: Optional[RequestMeta] = None,
    ) -> int:
        await self._require_user(user_id)
        revoked = await self.revocation.revoke_all_for_user(user_id)
        self.audit.record(
            "revoke_sessions", "users", "success", user_id=actor_id, request=request,
            metadata={"target_user_id": user_id, "count": revoked},
        )
        return revoked

    async def audit_log(self, user_id: str, *, limit: int = 50) -> List[AuditEntry]:
        await self._require_user(user_id)
        return await self.audit.list_for_user(user_id, limit)

    # roles
    async def list_roles(self) -> List[Role]:
        return await self.store.list_roles()

    async def get_role(self, role_id: str) -> RoleDetail:
        detail = await self.store.get_role_detail(role_id)
        if detail is None:
            raise RoleNotFoundError("Role not found")
        return detail

    async def create_role(
        self,
        name: Optional[str],
        description: Optional[str] = None,
        *,
        actor_id: Optional[str] = None,
        request: Optional[RequestMeta] = None,
    ) -> Role:
        if not name:
            raise MissingFieldsError("Role name is required")
        role = await self.store.create_role(name, description)
        self.audit.record(
            "create_role", "roles", "success", user_id=actor_id, request=request,
            metadata={"role_id": role.id, "name": name},
        )
        return role

    async def delete_role(
        self,
        role_id: str,
        *,
        actor_id: Optional[str] = None,
        request: Optional[RequestMeta] = None,
    ) -> None:
        role = await self._require_role(role_id)
        await self.store.delete_role(role_id)
        logger.info("role_deleted", role_id=role_id, name=role.name)
        self.audit.record(
            "delete_role", "roles", "success", user_id=actor_id, request=request,
            metadata={"role_id": role_id, "name": role.name},
        )

    async def add_permission_to_role(
        self,
        role_id: str,
        permission_id: Optional[str],
        *,
        actor_id: Optional[str] = None,
        request: Optional[RequestMeta] = None,
    ) -> bool:
        if not permission_id:
            raise MissingFieldsError("permissionId is required")
        await self._require_role(role_id)
        await self._require_permission(permission_id)
        added = await self.store.add_permission_to_role(role_id, permission_id)
        self.audit.record(
            "assign_permission", "roles", "success", user_id=actor_id, request=request,
            metadata={"role_id": role_id, "permission_id": permission_id, "changed": added},
        )
        return added

    async def remove_permission_from_role(
        self,
        role_id: str,
        permission_id: str,
        *,
        actor_id: Optional[str] = None,
        request: Optional[RequestMeta] = None,
    ) -> bool:
        await self._require_role(role_id)
        removed = await self.store.remove_permission_from_role(role_id, permission_id)
        self.audit.record(
            "remove_permission", "roles", "success", user_id=actor_id, request=request,
            metadata={"role_id": role_id, "permission_id": permission_id, "changed": removed},
        )
        return removed

    # permissions
    async def list_permissions(self) -> List[Permission]:
        return await self.store.list_permissions()

    async def create_permission(
        self,
        name: Optional[str],
        resource: Optional[str],
        action: Optional[str],
        description: Optional[str] = None,
        *,
        actor_id: Optional[str] = None,
        request: Optional[RequestMeta] = None,
    ) -> Permission:
        if not name or not resource or not action:
            raise MissingFieldsError("Name, resource, and action are required")
        perm = await self.store.create_permission(name, resource, action, description)
        self.audit.record(
            "create_permission", "permissions", "success", user_id=actor_id, request=request,
            metadata={"permission_id": perm.id, "name": name},
        )
        return perm

    async def delete_permission(
        self,
        permission_id: str,
        *,
        actor_id: Optional[str] = None,
        request: Optional[RequestMeta] = None,
    ) -> None:
        perm = await self._require_permission(permission_id)
        await self.store.delete_permission(permission_id)
        self.audit.record(
            "delete_permission", "permissions", "success", user_id=actor_id, request=request,
            metadata={"permission_id": permission_id, "name": perm.name},
        )
