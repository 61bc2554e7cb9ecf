from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_id() -> str:
    return str(uuid.uuid4())


@dataclass
class User:
    id: str
    email: str
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    is_active: bool = True
    is_email_verified: bool = False
    failed_login_attempts: int = 0
    locked_until: Optional[datetime] = None
    created_at: datetime = field(default_factory=_utcnow)
    updated_at: datetime = field(default_factory=_utcnow)

    def is_locked(self, now: datetime) -> bool:
        return self.locked_until is not None and self.locked_until > now


@dataclass
class UserCredential:
    """A user row together with its password hash.

    Only login reads this shape; every other lookup returns a plain ``User``.
    """

    user: User
    password_hash: str


@dataclass
class Role:
    id: str
    name: str
    description: Optional[str] = None
    created_at: datetime = field(default_factory=_utcnow)


@dataclass
class Permission:
    id: str
    name: str
    resource: str
    action: str
    description: Optional[str] = None
    created_at: datetime = field(default_factory=_utcnow)


@dataclass
class RoleDetail:
    role: Role
    permissions: List[Permission] = field(default_factory=list)


@dataclass
class ResolvedAccess:
    """Closure of a user's roles and the permissions they grant."""

    roles: List[str] = field(default_factory=list)
    permissions: List[str] = field(default_factory=list)


@dataclass
class RefreshTokenRecord:
    id: str
    user_id: str
    token_hash: str
    expires_at: datetime
    created_at: datetime = field(default_factory=_utcnow)
    revoked_at: Optional[datetime] = None
    user_is_active: bool = True

    def is_valid(self, now: datetime) -> bool:
        return self.revoked_at is None and self.expires_at > now


@dataclass
class AuditEntry:
    action: str
    resource: str
    status: str
    user_id: Optional[str] = None
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    metadata: Optional[Dict[str, Any]] = None
    id: str = field(default_factory=new_id)
    created_at: datetime = field(default_factory=_utcnow)
