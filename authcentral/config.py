from __future__ import annotations

import os
import secrets
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, ValidationInfo, field_validator

from authcentral.logging import get_logger

logger = get_logger(__name__)

# Seeded RBAC graph installed on first start (and by the SQL migration).
DEFAULT_PERMISSIONS: tuple[tuple[str, str, str, str], ...] = (
    ("users:read", "users", "read", "Read user information"),
    ("users:write", "users", "write", "Create and update users"),
    ("users:delete", "users", "delete", "Delete users"),
    ("roles:read", "roles", "read", "Read roles"),
    ("roles:write", "roles", "write", "Create and update roles"),
    ("roles:delete", "roles", "delete", "Delete roles"),
    ("permissions:read", "permissions", "read", "Read permissions"),
    ("permissions:write", "permissions", "write", "Create and update permissions"),
)

DEFAULT_ROLES: tuple[tuple[str, str], ...] = (
    ("admin", "Administrator with full access"),
    ("user", "Standard user"),
    ("manager", "Manager with elevated access"),
)

# role name -> permission names; "*" grants every seeded permission
DEFAULT_ROLE_GRANTS: dict[str, tuple[str, ...]] = {
    "admin": ("*",),
    "user": ("users:read",),
}


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Service settings, built once at startup and injected into components."""

    database_url: str = env_field(
        "postgresql://localhost:5432/auth_service", "DATABASE_URL"
    )
    database_pool_min: int = env_field(2, "DATABASE_POOL_MIN", ge=1)
    database_pool_max: int = env_field(20, "DATABASE_POOL_MAX", ge=1)
    redis_url: str = env_field("redis://localhost:6379/0", "REDIS_URL")
    store_timeout_seconds: float = env_field(
        5.0,
        "STORE_TIMEOUT_SECONDS",
        gt=0,
        description="Upper bound for a single database or Redis round trip",
    )
    use_memory_store: bool = env_field(False, "USE_MEMORY_STORE")
    allow_redis_fallback_dev: bool = env_field(False, "ALLOW_REDIS_FALLBACK_DEV")
    test_mode: bool = env_field(
        False,
        "TEST_MODE",
        description="Deterministic testing behaviors; allows runtime resets",
    )
    jwt_secret: str = env_field(None, "JWT_SECRET", validate_default=True)
    jwt_issuer: str = env_field("authcentral", "JWT_ISSUER")
    access_token_ttl_seconds: int = env_field(
        15 * 60, "ACCESS_TOKEN_TTL_SECONDS", gt=0
    )
    refresh_token_ttl_seconds: int = env_field(
        7 * 24 * 60 * 60, "REFRESH_TOKEN_TTL_SECONDS", gt=0
    )
    max_login_attempts: int = env_field(5, "MAX_LOGIN_ATTEMPTS", ge=1)
    lockout_duration_seconds: int = env_field(15 * 60, "LOCKOUT_DURATION_SECONDS", ge=1)
    password_min_length: int = env_field(8, "PASSWORD_MIN_LENGTH", ge=1)
    default_role: str = env_field("user", "DEFAULT_ROLE")
    seed_defaults: bool = env_field(
        True,
        "SEED_DEFAULTS",
        description="Install the default roles and permissions when missing",
    )
    token_purge_interval_seconds: int = env_field(
        60 * 60,
        "TOKEN_PURGE_INTERVAL_SECONDS",
        ge=0,
        description="How often expired refresh tokens are deleted; 0 disables the sweep",
    )
    cors_allow_origins: list[str] = env_field(["*"], "CORS_ALLOW_ORIGINS")
    app_version: str = env_field("1.0.0", "APP_VERSION")

    model_config = ConfigDict(extra="ignore", frozen=True)

    @classmethod
    def from_env(cls) -> "Settings":
        env_file_values = dotenv_values(".env")
        merged: dict[str, str] = {}
        for name, field in cls.model_fields.items():
            extra = field.json_schema_extra or {}
            env_key = extra.get("env") if isinstance(extra, dict) else None
            env_name = env_key or name.upper()
            if env_name in os.environ:
                merged[name] = os.environ[env_name]
            elif env_name in env_file_values:
                merged[name] = env_file_values[env_name]
        return cls(**merged)

    @field_validator("cors_allow_origins", mode="before")
    @classmethod
    def _split_origins(cls, value: Any) -> Any:
        if isinstance(value, str):
            return [item.strip() for item in value.split(",") if item.strip()]
        return value

    @field_validator("jwt_secret", mode="before")
    @classmethod
    def _ensure_jwt_secret(cls, value: str | None, info: ValidationInfo) -> str:
        if value:
            if len(value) < 32:
                raise ValueError("JWT_SECRET must be at least 32 characters")
            return value
        if info.data.get("test_mode"):
            logger.warning("jwt_secret_generated", reason="TEST_MODE without JWT_SECRET")
            return secrets.token_urlsafe(48)
        raise ValueError("JWT_SECRET must be set")

    @field_validator("database_pool_max")
    @classmethod
    def _pool_bounds(cls, value: int, info: ValidationInfo) -> int:
        minimum = info.data.get("database_pool_min", 1)
        if value < minimum:
            raise ValueError("DATABASE_POOL_MAX must be >= DATABASE_POOL_MIN")
        return value


def get_settings() -> Settings:
    global _settings_cache
    if _settings_cache is None:
        _settings_cache = Settings.from_env()
    return _settings_cache


_settings_cache: Settings | None = None


def reset_settings_cache() -> None:
    """Clear cached settings so future calls re-read the environment."""

    global _settings_cache
    _settings_cache = None
