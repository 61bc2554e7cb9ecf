from __future__ import annotations

from datetime import datetime
from typing import Any, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel

from authcentral.storage.models import AuditEntry, Permission, ResolvedAccess, Role, User

# Bound free-text request fields; the store columns are VARCHAR(255)
MAX_FIELD_LENGTH = 255
# argon2 hashes arbitrary lengths, cap the work a single request can ask for
MAX_PASSWORD_LENGTH = 1024
MAX_TOKEN_LENGTH = 4096

_VALID_ERROR_CODES = frozenset({
    "VALIDATION_ERROR",
    "MISSING_FIELDS",
    "WEAK_PASSWORD",
    "MISSING_TOKEN",
    "EMAIL_EXISTS",
    "DUPLICATE_FIELD",
    "INVALID_REFERENCE",
    "UNAUTHORIZED",
    "INVALID_CREDENTIALS",
    "NO_TOKEN",
    "INVALID_TOKEN",
    "TOKEN_EXPIRED",
    "TOKEN_REVOKED",
    "INVALID_REFRESH_TOKEN",
    "ACCOUNT_LOCKED",
    "FORBIDDEN",
    "ACCOUNT_DISABLED",
    "NOT_FOUND",
    "USER_NOT_FOUND",
    "ROLE_NOT_FOUND",
    "PERMISSION_NOT_FOUND",
    "SERVICE_UNAVAILABLE",
    "INTERNAL_ERROR",
})


class CamelModel(BaseModel):
    """Wire models: snake_case in Python, camelCase on the wire."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class ErrorBody(BaseModel):
    """Error part of the envelope; ``code`` is one of a closed set."""

    message: str
    code: str

    @field_validator("code")
    @classmethod
    def _validate_error_code(cls, value: str) -> str:
        if value not in _VALID_ERROR_CODES:
            raise ValueError(
                f"Invalid error code '{value}'. Must be one of: {', '.join(sorted(_VALID_ERROR_CODES))}"
            )
        return value


class Envelope(BaseModel):
    success: bool
    message: Optional[str] = None
    data: Optional[Any] = None
    error: Optional[ErrorBody] = None


def _strip(value: Any) -> Any:
    return value.strip() if isinstance(value, str) else value


# Requests. Required fields are Optional here so that absent values reach the
# service layer and come back as MISSING_FIELDS rather than a schema error.


class RegisterRequest(CamelModel):
    email: Optional[str] = Field(default=None, max_length=MAX_FIELD_LENGTH)
    password: Optional[str] = Field(default=None, max_length=MAX_PASSWORD_LENGTH)
    first_name: Optional[str] = Field(default=None, max_length=MAX_FIELD_LENGTH)
    last_name: Optional[str] = Field(default=None, max_length=MAX_FIELD_LENGTH)

    @field_validator("email", "first_name", "last_name")
    @classmethod
    def _strip_text(cls, value: Optional[str]) -> Optional[str]:
        return _strip(value)


class LoginRequest(CamelModel):
    email: Optional[str] = Field(default=None, max_length=MAX_FIELD_LENGTH)
    password: Optional[str] = Field(default=None, max_length=MAX_PASSWORD_LENGTH)

    @field_validator("email")
    @classmethod
    def _strip_email(cls, value: Optional[str]) -> Optional[str]:
        return _strip(value)


class RefreshTokenRequest(CamelModel):
    refresh_token: Optional[str] = Field(default=None, max_length=MAX_TOKEN_LENGTH)


class LogoutRequest(CamelModel):
    refresh_token: Optional[str] = Field(default=None, max_length=MAX_TOKEN_LENGTH)


class VerifyRequest(CamelModel):
    token: Optional[str] = Field(default=None, max_length=MAX_TOKEN_LENGTH)


class AssignRoleRequest(CamelModel):
    role_name: Optional[str] = Field(default=None, max_length=MAX_FIELD_LENGTH)


class UserStatusRequest(CamelModel):
    is_active: bool


class CreateRoleRequest(CamelModel):
    name: Optional[str] = Field(default=None, max_length=MAX_FIELD_LENGTH)
    description: Optional[str] = Field(default=None, max_length=MAX_FIELD_LENGTH)


class AddPermissionRequest(CamelModel):
    permission_id: Optional[str] = Field(default=None, max_length=64)


class CreatePermissionRequest(CamelModel):
    name: Optional[str] = Field(default=None, max_length=MAX_FIELD_LENGTH)
    resource: Optional[str] = Field(default=None, max_length=MAX_FIELD_LENGTH)
    action: Optional[str] = Field(default=None, max_length=MAX_FIELD_LENGTH)
    description: Optional[str] = Field(default=None, max_length=MAX_FIELD_LENGTH)


# Responses


class PublicProfile(CamelModel):
    id: str
    email: str
    first_name: Optional[str] = None
    last_name: Optional[str] = None

    @classmethod
    def from_user(cls, user: User) -> "PublicProfile":
        return cls(
            id=user.id,
            email=user.email,
            first_name=user.first_name,
            last_name=user.last_name,
        )


class SessionUser(PublicProfile):
    roles: List[str] = Field(default_factory=list)
    permissions: List[str] = Field(default_factory=list)

    @classmethod
    def from_access(cls, user: User, access: ResolvedAccess) -> "SessionUser":
        return cls(
            id=user.id,
            email=user.email,
            first_name=user.first_name,
            last_name=user.last_name,
            roles=access.roles,
            permissions=access.permissions,
        )


class UserDetail(SessionUser):
    is_active: bool = True

    @classmethod
    def from_access(cls, user: User, access: ResolvedAccess) -> "UserDetail":
        return cls(
            id=user.id,
            email=user.email,
            first_name=user.first_name,
            last_name=user.last_name,
            roles=access.roles,
            permissions=access.permissions,
            is_active=user.is_active,
        )


class UserSummary(PublicProfile):
    is_active: bool = True
    is_email_verified: bool = False
    created_at: datetime

    @classmethod
    def from_user(cls, user: User) -> "UserSummary":
        return cls(
            id=user.id,
            email=user.email,
            first_name=user.first_name,
            last_name=user.last_name,
            is_active=user.is_active,
            is_email_verified=user.is_email_verified,
            created_at=user.created_at,
        )


class LoginResponse(CamelModel):
    user: SessionUser
    access_token: str
    refresh_token: str
    expires_in: int


class RefreshResponse(CamelModel):
    access_token: str
    expires_in: int


class VerifiedUser(CamelModel):
    id: str
    email: str
    roles: List[str]
    permissions: List[str]


class VerifyResponse(CamelModel):
    valid: bool = True
    user: VerifiedUser
    expires_at: datetime


class RoleResponse(CamelModel):
    id: str
    name: str
    description: Optional[str] = None
    created_at: datetime

    @classmethod
    def from_role(cls, role: Role) -> "RoleResponse":
        return cls(
            id=role.id,
            name=role.name,
            description=role.description,
            created_at=role.created_at,
        )


class PermissionResponse(CamelModel):
    id: str
    name: str
    resource: str
    action: str
    description: Optional[str] = None
    created_at: datetime

    @classmethod
    def from_permission(cls, perm: Permission) -> "PermissionResponse":
        return cls(
            id=perm.id,
            name=perm.name,
            resource=perm.resource,
            action=perm.action,
            description=perm.description,
            created_at=perm.created_at,
        )


class RoleDetailResponse(RoleResponse):
    permissions: List[PermissionResponse] = Field(default_factory=list)


class AuditEntryResponse(CamelModel):
    id: str
    action: str
    resource: str
    status: str
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    metadata: Optional[dict] = None
    created_at: datetime

    @classmethod
    def from_entry(cls, entry: AuditEntry) -> "AuditEntryResponse":
        return cls(
            id=entry.id,
            action=entry.action,
            resource=entry.resource,
            status=entry.status,
            ip_address=entry.ip_address,
            user_agent=entry.user_agent,
            metadata=entry.metadata,
            created_at=entry.created_at,
        )


class JwksResponse(BaseModel):
    keys: List[dict] = Field(default_factory=list)
    message: str
    note: str
