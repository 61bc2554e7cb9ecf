from __future__ import annotations

from typing import Optional


class ServiceError(Exception):
    """Base class for service-layer exceptions mapped to HTTP responses.

    Each subclass carries the HTTP ``status_code`` and the stable ``error_code``
    clients switch on. The set of codes is closed; add a subclass rather than
    passing ad-hoc codes around.
    """

    status_code: int = 400
    error_code: str = "VALIDATION_ERROR"

    def __init__(
        self,
        message: str,
        *,
        status_code: Optional[int] = None,
        detail: Optional[dict] = None,
        error_code: Optional[str] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code
        if error_code is not None:
            self.error_code = error_code
        self.detail = detail or {}


class ValidationError(ServiceError):
    """Request validation failed (400)."""
    status_code = 400
    error_code = "VALIDATION_ERROR"


class MissingFieldsError(ValidationError):
    error_code = "MISSING_FIELDS"


class WeakPasswordError(ValidationError):
    error_code = "WEAK_PASSWORD"


class TokenRequiredError(ValidationError):
    """A token field in the request body is missing (400)."""
    error_code = "MISSING_TOKEN"


class DuplicateEmailError(ServiceError):
    """Registration with an email that is already taken (400)."""
    status_code = 400
    error_code = "EMAIL_EXISTS"


class AuthenticationError(ServiceError):
    """Authentication failed or missing (401)."""
    status_code = 401
    error_code = "UNAUTHORIZED"


class InvalidCredentialsError(AuthenticationError):
    """Unknown email or wrong password; the two are never distinguished."""
    error_code = "INVALID_CREDENTIALS"


class MissingTokenError(AuthenticationError):
    error_code = "NO_TOKEN"


class InvalidTokenError(AuthenticationError):
    error_code = "INVALID_TOKEN"


class InvalidSignatureError(InvalidTokenError):
    """Token signature does not match the shared secret."""


class MalformedTokenError(InvalidTokenError):
    """Token is not a well-formed JWT or lacks a required claim."""


class TokenExpiredError(InvalidTokenError):
    error_code = "TOKEN_EXPIRED"


class TokenRevokedError(AuthenticationError):
    error_code = "TOKEN_REVOKED"


class InvalidRefreshTokenError(AuthenticationError):
    error_code = "INVALID_REFRESH_TOKEN"


class AccountLockedError(ServiceError):
    """Too many failed logins; retry after the lockout window (423)."""
    status_code = 423
    error_code = "ACCOUNT_LOCKED"


class ForbiddenError(ServiceError):
    """Access denied - insufficient permissions (403)."""
    status_code = 403
    error_code = "FORBIDDEN"


class AccountDisabledError(ForbiddenError):
    error_code = "ACCOUNT_DISABLED"


class NotFoundError(ServiceError):
    """Requested resource not found (404)."""
    status_code = 404
    error_code = "NOT_FOUND"


class UserNotFoundError(NotFoundError):
    error_code = "USER_NOT_FOUND"


class RoleNotFoundError(NotFoundError):
    error_code = "ROLE_NOT_FOUND"


class PermissionNotFoundError(NotFoundError):
    error_code = "PERMISSION_NOT_FOUND"


__all__ = [
    "ServiceError",
    "ValidationError",
    "MissingFieldsError",
    "WeakPasswordError",
    "TokenRequiredError",
    "DuplicateEmailError",
    "AuthenticationError",
    "InvalidCredentialsError",
    "MissingTokenError",
    "InvalidTokenError",
    "InvalidSignatureError",
    "MalformedTokenError",
    "TokenExpiredError",
    "TokenRevokedError",
    "InvalidRefreshTokenError",
    "AccountLockedError",
    "ForbiddenError",
    "AccountDisabledError",
    "NotFoundError",
    "UserNotFoundError",
    "RoleNotFoundError",
    "PermissionNotFoundError",
]
