from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Iterable, List, Optional, Tuple

from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHash, VerificationError, VerifyMismatchError

from authcentral.config import Settings
from authcentral.logging import get_logger
from authcentral.service.audit import AuditLogger, RequestMeta
from authcentral.service.errors import (
    AccountDisabledError,
    AccountLockedError,
    DuplicateEmailError,
    ForbiddenError,
    InvalidCredentialsError,
    InvalidRefreshTokenError,
    MissingFieldsError,
    MissingTokenError,
    ServiceError,
    TokenRequiredError,
    TokenRevokedError,
    UserNotFoundError,
    WeakPasswordError,
)
from authcentral.service.revocation import RevocationRegistry
from authcentral.service.tokens import AccessClaims, IssuedAccessToken, TokenIssuer, TokenVerifier
from authcentral.storage.common import BoundedStore
from authcentral.storage.errors import DuplicateField
from authcentral.storage.models import ResolvedAccess, User

logger = get_logger(__name__)


@dataclass
class LoginResult:
    user: User
    access: ResolvedAccess
    access_token: IssuedAccessToken
    refresh_token: str


@dataclass
class AuthContext:
    """Authenticated caller of a protected endpoint."""

    claims: AccessClaims
    token: str

    @property
    def user_id(self) -> str:
        return self.claims.sub


def has_any_permission(granted: Iterable[str], required: Iterable[str]) -> bool:
    """True when ``granted`` holds at least one of ``required`` (exact names)."""
    return not set(granted).isdisjoint(required)


class AuthService:
    """Registration, login with lockout, refresh, logout and token checks."""

    def __init__(
        self,
        store: BoundedStore,
        revocation: RevocationRegistry,
        issuer: TokenIssuer,
        verifier: TokenVerifier,
        audit: AuditLogger,
        settings: Settings,
    ) -> None:
        self.store = store
        self.revocation = revocation
        self.issuer = issuer
        self.verifier = verifier
        self.audit = audit
        self.settings = settings
        self._pwd_hasher = PasswordHasher(type=Type.ID)
        self._dummy_hash: Optional[str] = None
        self.logger = logger

    def _now(self) -> datetime:
        """Timezone-aware UTC helper to avoid naive datetime usage."""

        return datetime.now(timezone.utc)

    def _hash_password(self, password: str) -> str:
        return self._pwd_hasher.hash(password)

    def _verify_password(self, stored_hash: str, password: str) -> bool:
        try:
            return self._pwd_hasher.verify(stored_hash, password)
        except VerifyMismatchError:
            return False
        except (InvalidHash, VerificationError):
            self.logger.warning("password_hash_unusable")
            return False

    def _burn_password_check(self, password: str) -> None:
        # Unknown emails still pay for one hash verification.
        if self._dummy_hash is None:
            self._dummy_hash = self._hash_password("not-a-real-password")
        self._verify_password(self._dummy_hash, password)

    async def register(
        self,
        email: Optional[str],
        password: Optional[str],
        *,
        first_name: Optional[str] = None,
        last_name: Optional[str] = None,
        request: Optional[RequestMeta] = None,
    ) -> User:
        if not email or not password:
            raise MissingFieldsError("Email and password are required")
        if len(password) < self.settings.password_min_length:
            raise WeakPasswordError(
                f"Password must be at least {self.settings.password_min_length} characters"
            )
        if await self.store.get_user_by_email(email):
            raise DuplicateEmailError("Email already registered")

        try:
            user = await self.store.create_user(
                email,
                self._hash_password(password),
                first_name=first_name,
                last_name=last_name,
            )
        except DuplicateField as exc:
            # Lost a race with a concurrent registration for the same email
            raise DuplicateEmailError("Email already registered") from exc

        role = await self.store.get_role_by_name(self.settings.default_role)
        if role is None:
            self.logger.warning("default_role_missing", role=self.settings.default_role)
        else:
            await self.store.assign_role(user.id, role.id)

        self.audit.record("register", "users", "success", user_id=user.id, request=request)
        self.logger.info("user_registered", user_id=user.id)
        return user

    async def login(
        self,
        email: Optional[str],
        password: Optional[str],
        *,
        request: Optional[RequestMeta] = None,
    ) -> LoginResult:
        if not email or not password:
            raise MissingFieldsError("Email and password are required")

        record = await self.store.get_credentials_by_email(email)
        if record is None:
            self._burn_password_check(password)
            self.audit.record(
                "login", "auth", "failed", request=request, metadata={"reason": "unknown_email"}
            )
            raise InvalidCredentialsError("Invalid credentials")

        user = record.user
        now = self._now()
        if user.is_locked(now):
            self.audit.record(
                "login", "auth", "failed", user_id=user.id, request=request,
                metadata={"reason": "account_locked"},
            )
            raise AccountLockedError("Account is locked. Try again later")
        if not user.is_active:
            self.audit.record(
                "login", "auth", "failed", user_id=user.id, request=request,
                metadata={"reason": "account_disabled"},
            )
            raise AccountDisabledError("Account is disabled")

        if not self._verify_password(record.password_hash, password):
            await self._register_failed_attempt(user, request)

        # The row may have been locked by parallel attempts since it was read.
        if not await self.store.reset_failed_logins(user.id):
            self.audit.record(
                "login", "auth", "failed", user_id=user.id, request=request,
                metadata={"reason": "account_locked"},
            )
            raise AccountLockedError("Account is locked. Try again later")
        user.failed_login_attempts = 0
        user.locked_until = None

        access = await self.store.resolve_access(user.id)
        access_token = self.issuer.issue_access_token(
            user.id, user.email, access.roles, access.permissions
        )
        refresh_token = await self.issuer.issue_refresh_token(
            user.id, self.issuer.refresh_expiry(self.settings.refresh_token_ttl_seconds)
        )
        self.audit.record("login", "auth", "success", user_id=user.id, request=request)
        self.logger.info("login_succeeded", user_id=user.id)
        return LoginResult(
            user=user,
            access=access,
            access_token=access_token,
            refresh_token=refresh_token,
        )

    async def _register_failed_attempt(
        self, user: User, request: Optional[RequestMeta]
    ) -> None:
        """Count the failure atomically in the store, then raise the matching error."""
        attempts, locked_until = await self.store.record_failed_login(
            user.id,
            max_attempts=self.settings.max_login_attempts,
            lockout=timedelta(seconds=self.settings.lockout_duration_seconds),
        )
        if locked_until is not None and locked_until > self._now():
            self.logger.warning("account_locked", user_id=user.id, attempts=attempts)
            self.audit.record(
                "account_locked", "auth", "failed", user_id=user.id, request=request,
                metadata={"attempts": attempts},
            )
            raise AccountLockedError("Account locked due to too many failed attempts")
        self.audit.record(
            "login", "auth", "failed", user_id=user.id, request=request,
            metadata={"reason": "bad_password", "attempts": attempts},
        )
        raise InvalidCredentialsError("Invalid credentials")

    async def refresh(
        self, refresh_token: Optional[str], *, request: Optional[RequestMeta] = None
    ) -> IssuedAccessToken:
        """Mint a new access token from a refresh token.

        Roles and permissions are resolved again so grants changed since
        login apply immediately. The refresh token itself is not rotated.
        """
        try:
            if not refresh_token:
                raise TokenRequiredError("Refresh token is required")
            record = await self.revocation.find_valid_refresh_token(refresh_token)
            if record is None:
                raise InvalidRefreshTokenError("Invalid or expired refresh token")
            if not record.user_is_active:
                raise AccountDisabledError("User account is disabled")
            user = await self.store.get_user(record.user_id)
            if user is None:
                raise InvalidRefreshTokenError("Invalid or expired refresh token")
        except ServiceError as exc:
            self.audit.record(
                "refresh_token", "auth", "failed", request=request,
                metadata={"reason": exc.error_code},
            )
            raise

        access = await self.store.resolve_access(user.id)
        issued = self.issuer.issue_access_token(
            user.id, user.email, access.roles, access.permissions
        )
        self.audit.record("refresh_token", "auth", "success", user_id=user.id, request=request)
        return issued

    async def verify_token(self, token: Optional[str]) -> AccessClaims:
        """Full check of an access token: signature, expiry, then the blacklist.

        A blacklist that cannot be reached raises ``StoreUnavailable``; the
        token is never reported valid in that case.
        """
        if not token:
            raise TokenRequiredError("Token is required")
        claims = self.verifier.verify(token)
        if await self.revocation.is_blacklisted(token):
            raise TokenRevokedError("Token has been revoked")
        return claims

    @staticmethod
    def _extract_bearer(header: Optional[str]) -> Optional[str]:
        if not header:
            return None
        scheme, _, value = header.partition(" ")
        if scheme.lower() != "bearer" or not value.strip():
            return None
        return value.strip()

    async def authenticate(
        self,
        authorization: Optional[str],
        *,
        request: Optional[RequestMeta] = None,
        resource: str = "auth",
    ) -> AuthContext:
        """Resolve a bearer header into a caller; every rejection is audited."""
        token = self._extract_bearer(authorization)
        try:
            if not token:
                raise MissingTokenError("No token provided")
            claims = await self.verify_token(token)
        except ServiceError as exc:
            self.audit.record(
                "authenticate", resource, "failed", request=request,
                metadata={"reason": exc.error_code},
            )
            raise
        return AuthContext(claims=claims, token=token)

    def require_permissions(
        self,
        ctx: AuthContext,
        required: Iterable[str],
        *,
        request: Optional[RequestMeta] = None,
        resource: str = "",
    ) -> None:
        required = list(required)
        if has_any_permission(ctx.claims.permissions, required):
            return
        self.audit.record(
            "authorize", resource, "failed", user_id=ctx.user_id, request=request,
            metadata={"required": required},
        )
        raise ForbiddenError("Insufficient permissions")

    async def logout(
        self,
        ctx: AuthContext,
        refresh_token: Optional[str] = None,
        *,
        request: Optional[RequestMeta] = None,
    ) -> None:
        """Blacklist the presented access token and revoke the refresh token.

        Repeating a logout is harmless: the blacklist write is an overwrite
        and revoking an already-revoked refresh token is a no-op.
        """
        await self.revocation.blacklist(ctx.token, self.verifier.remaining_ms(ctx.claims))
        if refresh_token:
            await self.revocation.revoke_refresh_token(refresh_token)
        self.audit.record("logout", "auth", "success", user_id=ctx.user_id, request=request)

    async def me(self, ctx: AuthContext) -> Tuple[User, ResolvedAccess]:
        user = await self.store.get_user(ctx.user_id)
        if user is None:
            raise UserNotFoundError("User not found")
        access = await self.store.resolve_access(user.id)
        return user, access

    async def revoke_all_sessions(self, user_id: str) -> int:
        return await self.revocation.revoke_all_for_user(user_id)


__all__: List[str] = [
    "AuthContext",
    "AuthService",
    "LoginResult",
    "has_any_permission",
]
