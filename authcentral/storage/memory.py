from __future__ import annotations

import threading
from dataclasses import replace
from datetime import datetime, timedelta, timezone
from typing import Dict, Iterable, List, Optional, Set, Tuple

from authcentral.config import DEFAULT_PERMISSIONS, DEFAULT_ROLE_GRANTS, DEFAULT_ROLES
from authcentral.logging import get_logger
from authcentral.storage.errors import DuplicateField, InvalidReference
from authcentral.storage.models import (
    AuditEntry,
    Permission,
    RefreshTokenRecord,
    ResolvedAccess,
    Role,
    RoleDetail,
    User,
    UserCredential,
    new_id,
)


class MemoryStore:
    """In-process backing store used for tests and single-node development.

    Every read returns a copy so callers cannot mutate shared rows, and every
    mutation runs under ``_data_lock`` which makes read-modify-write sequences
    (the failed-login counter in particular) atomic.
    """

    def __init__(self, *, seed_defaults: bool = True) -> None:
        self.logger = get_logger(__name__)
        self.users: Dict[str, User] = {}
        self.password_hashes: Dict[str, str] = {}
        self.roles: Dict[str, Role] = {}
        self.permissions: Dict[str, Permission] = {}
        self.user_roles: Set[Tuple[str, str]] = set()
        self.role_permissions: Set[Tuple[str, str]] = set()
        self.refresh_tokens: Dict[str, RefreshTokenRecord] = {}
        self.audit_log: List[AuditEntry] = []
        # RLock so helpers can be called from inside other locked methods
        self._data_lock = threading.RLock()
        if seed_defaults:
            self.ensure_default_rbac()

    @staticmethod
    def _now() -> datetime:
        return datetime.now(timezone.utc)

    def ping(self) -> bool:
        return True

    def ensure_default_rbac(self) -> None:
        """Install the seeded roles and permissions if they are missing."""
        with self._data_lock:
            for name, resource, action, description in DEFAULT_PERMISSIONS:
                if self._permission_by_name(name) is None:
                    perm = Permission(
                        id=new_id(),
                        name=name,
                        resource=resource,
                        action=action,
                        description=description,
                    )
                    self.permissions[perm.id] = perm
            for name, description in DEFAULT_ROLES:
                if self._role_by_name(name) is None:
                    role = Role(id=new_id(), name=name, description=description)
                    self.roles[role.id] = role
            seeded = list(self.permissions.values())
            for role_name, grants in DEFAULT_ROLE_GRANTS.items():
                role = self._role_by_name(role_name)
                for perm in seeded:
                    if "*" in grants or perm.name in grants:
                        self.role_permissions.add((role.id, perm.id))

    # users / credentials
    def create_user(
        self,
        email: str,
        password_hash: str,
        *,
        first_name: Optional[str] = None,
        last_name: Optional[str] = None,
    ) -> User:
        with self._data_lock:
            if any(existing.email == email for existing in self.users.values()):
                raise DuplicateField("email already exists", {"field": "email"})
            now = self._now()
            user = User(
                id=new_id(),
                email=email,
                first_name=first_name,
                last_name=last_name,
                created_at=now,
                updated_at=now,
            )
            self.users[user.id] = user
            self.password_hashes[user.id] = password_hash
            return replace(user)

    def get_user(self, user_id: str) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            return replace(user) if user else None

    def get_user_by_email(self, email: str) -> Optional[User]:
        with self._data_lock:
            user = next((u for u in self.users.values() if u.email == email), None)
            return replace(user) if user else None

    def get_credentials_by_email(self, email: str) -> Optional[UserCredential]:
        with self._data_lock:
            user = next((u for u in self.users.values() if u.email == email), None)
            if not user:
                return None
            return UserCredential(user=replace(user), password_hash=self.password_hashes[user.id])

    def list_users(self, limit: int = 100, offset: int = 0) -> List[User]:
        with self._data_lock:
            ordered = sorted(self.users.values(), key=lambda u: u.created_at, reverse=True)
            return [replace(u) for u in ordered[offset : offset + limit]]

    def set_user_active(self, user_id: str, is_active: bool) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return None
            user.is_active = is_active
            user.updated_at = self._now()
            return replace(user)

    def record_failed_login(
        self, user_id: str, *, max_attempts: int, lockout: timedelta
    ) -> Tuple[int, Optional[datetime]]:
        """Count a failed password check and lock the account at the threshold.

        Returns ``(failed_login_attempts, locked_until)``. An account that is
        already locked is left untouched so parallel attempts cannot push the
        counter past the lockout threshold.
        """
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return 0, None
            now = self._now()
            if user.is_locked(now):
                return user.failed_login_attempts, user.locked_until
            user.failed_login_attempts += 1
            if user.failed_login_attempts >= max_attempts:
                user.locked_until = now + lockout
            user.updated_at = now
            return user.failed_login_attempts, user.locked_until

    def lock_account(self, user_id: str, duration: timedelta) -> Optional[datetime]:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return None
            user.locked_until = self._now() + duration
            user.updated_at = self._now()
            return user.locked_until

    def unlock_account(self, user_id: str) -> None:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return
            user.failed_login_attempts = 0
            user.locked_until = None
            user.updated_at = self._now()

    def reset_failed_logins(self, user_id: str) -> bool:
        """Clear the failure counter unless the account is currently locked.

        Returns False when the account is locked (or missing), so a login
        that read the row before a concurrent lock cannot clear it.
        """
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return False
            now = self._now()
            if user.is_locked(now):
                return False
            if user.failed_login_attempts or user.locked_until is not None:
                user.failed_login_attempts = 0
                user.locked_until = None
                user.updated_at = now
            return True

    # rbac graph
    def _role_by_name(self, name: str) -> Optional[Role]:
        return next((r for r in self.roles.values() if r.name == name), None)

    def _permission_by_name(self, name: str) -> Optional[Permission]:
        return next((p for p in self.permissions.values() if p.name == name), None)

    def resolve_access(self, user_id: str) -> ResolvedAccess:
        with self._data_lock:
            role_ids = {rid for uid, rid in self.user_roles if uid == user_id}
            perm_ids = {pid for rid, pid in self.role_permissions if rid in role_ids}
            roles = sorted(self.roles[rid].name for rid in role_ids if rid in self.roles)
            permissions = sorted(
                self.permissions[pid].name for pid in perm_ids if pid in self.permissions
            )
            return ResolvedAccess(roles=roles, permissions=permissions)

    def assign_role(self, user_id: str, role_id: str) -> bool:
        """Grant a role; returns False when the user already holds it."""
        with self._data_lock:
            if user_id not in self.users or role_id not in self.roles:
                raise InvalidReference(
                    "user or role does not exist", {"user_id": user_id, "role_id": role_id}
                )
            pair = (user_id, role_id)
            if pair in self.user_roles:
                return False
            self.user_roles.add(pair)
            return True

    def remove_role(self, user_id: str, role_id: str) -> bool:
        with self._data_lock:
            pair = (user_id, role_id)
            if pair not in self.user_roles:
                return False
            self.user_roles.discard(pair)
            return True

    def list_roles(self) -> List[Role]:
        with self._data_lock:
            return [replace(r) for r in sorted(self.roles.values(), key=lambda r: r.name)]

    def get_role(self, role_id: str) -> Optional[Role]:
        with self._data_lock:
            role = self.roles.get(role_id)
            return replace(role) if role else None

    def get_role_by_name(self, name: str) -> Optional[Role]:
        with self._data_lock:
            role = self._role_by_name(name)
            return replace(role) if role else None

    def get_role_detail(self, role_id: str) -> Optional[RoleDetail]:
        with self._data_lock:
            role = self.roles.get(role_id)
            if not role:
                return None
            perms = [
                replace(self.permissions[pid])
                for rid, pid in self.role_permissions
                if rid == role_id and pid in self.permissions
            ]
            perms.sort(key=lambda p: p.name)
            return RoleDetail(role=replace(role), permissions=perms)

    def create_role(self, name: str, description: Optional[str] = None) -> Role:
        with self._data_lock:
            if self._role_by_name(name) is not None:
                raise DuplicateField("role name already exists", {"field": "name"})
            role = Role(id=new_id(), name=name, description=description, created_at=self._now())
            self.roles[role.id] = role
            return replace(role)

    def delete_role(self, role_id: str) -> bool:
        with self._data_lock:
            if self.roles.pop(role_id, None) is None:
                return False
            self.user_roles = {pair for pair in self.user_roles if pair[1] != role_id}
            self.role_permissions = {
                pair for pair in self.role_permissions if pair[0] != role_id
            }
            return True

    def list_permissions(self) -> List[Permission]:
        with self._data_lock:
            ordered = sorted(self.permissions.values(), key=lambda p: (p.resource, p.action))
            return [replace(p) for p in ordered]

    def get_permission(self, permission_id: str) -> Optional[Permission]:
        with self._data_lock:
            perm = self.permissions.get(permission_id)
            return replace(perm) if perm else None

    def create_permission(
        self,
        name: str,
        resource: str,
        action: str,
        description: Optional[str] = None,
    ) -> Permission:
        with self._data_lock:
            if self._permission_by_name(name) is not None:
                raise DuplicateField("permission name already exists", {"field": "name"})
            perm = Permission(
                id=new_id(),
                name=name,
                resource=resource,
                action=action,
                description=description,
                created_at=self._now(),
            )
            self.permissions[perm.id] = perm
            return replace(perm)

    def delete_permission(self, permission_id: str) -> bool:
        with self._data_lock:
            if self.permissions.pop(permission_id, None) is None:
                return False
            self.role_permissions = {
                pair for pair in self.role_permissions if pair[1] != permission_id
            }
            return True

    def add_permission_to_role(self, role_id: str, permission_id: str) -> bool:
        with self._data_lock:
            if role_id not in self.roles or permission_id not in self.permissions:
                raise InvalidReference(
                    "role or permission does not exist",
                    {"role_id": role_id, "permission_id": permission_id},
                )
            pair = (role_id, permission_id)
            if pair in self.role_permissions:
                return False
            self.role_permissions.add(pair)
            return True

    def remove_permission_from_role(self, role_id: str, permission_id: str) -> bool:
        with self._data_lock:
            pair = (role_id, permission_id)
            if pair not in self.role_permissions:
                return False
            self.role_permissions.discard(pair)
            return True

    # refresh tokens
    def create_refresh_token(
        self, user_id: str, token_hash: str, expires_at: datetime
    ) -> RefreshTokenRecord:
        with self._data_lock:
            if user_id not in self.users:
                raise InvalidReference("user does not exist", {"user_id": user_id})
            if any(r.token_hash == token_hash for r in self.refresh_tokens.values()):
                raise DuplicateField("refresh token already exists", {"field": "token_hash"})
            record = RefreshTokenRecord(
                id=new_id(),
                user_id=user_id,
                token_hash=token_hash,
                expires_at=expires_at,
                created_at=self._now(),
            )
            self.refresh_tokens[record.id] = record
            return replace(record)

    def find_valid_refresh_token(self, token_hash: str) -> Optional[RefreshTokenRecord]:
        with self._data_lock:
            now = self._now()
            for record in self.refresh_tokens.values():
                if record.token_hash != token_hash or not record.is_valid(now):
                    continue
                user = self.users.get(record.user_id)
                if user is None:
                    return None
                return replace(record, user_is_active=user.is_active)
            return None

    def revoke_refresh_token(self, token_hash: str) -> bool:
        with self._data_lock:
            for record in self.refresh_tokens.values():
                if record.token_hash == token_hash and record.revoked_at is None:
                    record.revoked_at = self._now()
                    return True
            return False

    def revoke_all_refresh_tokens(self, user_id: str) -> int:
        with self._data_lock:
            now = self._now()
            revoked = 0
            for record in self.refresh_tokens.values():
                if record.user_id == user_id and record.revoked_at is None:
                    record.revoked_at = now
                    revoked += 1
            return revoked

    def delete_expired_refresh_tokens(self) -> int:
        with self._data_lock:
            now = self._now()
            expired = [rid for rid, r in self.refresh_tokens.items() if r.expires_at <= now]
            for rid in expired:
                self.refresh_tokens.pop(rid, None)
            return len(expired)

    # audit
    def record_audit(self, entry: AuditEntry) -> None:
        with self._data_lock:
            self.audit_log.append(entry)

    def list_audit_entries(self, user_id: str, limit: int = 50) -> List[AuditEntry]:
        with self._data_lock:
            entries: Iterable[AuditEntry] = (e for e in self.audit_log if e.user_id == user_id)
            ordered = sorted(entries, key=lambda e: e.created_at, reverse=True)
            return [replace(e) for e in ordered[:limit]]
