from __future__ import annotations

import threading
from typing import Optional, Union
from urllib.parse import urlparse, urlunparse

from authcentral.config import Settings, get_settings, reset_settings_cache
from authcentral.logging import get_logger
from authcentral.service.audit import AuditLogger
from authcentral.service.auth import AuthService
from authcentral.service.rbac import AccessControlService
from authcentral.service.revocation import RevocationRegistry
from authcentral.service.tokens import TokenIssuer, TokenVerifier
from authcentral.storage.common import BoundedStore
from authcentral.storage.memory import MemoryStore
from authcentral.storage.postgres import PostgresStore
from authcentral.storage.redis_cache import MemoryTokenCache, RedisCache, SyncRedisCache

logger = get_logger(__name__)

TokenCacheBackend = Union[RedisCache, SyncRedisCache, MemoryTokenCache]


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Mask the password component of a URL for logging.

    Example: redis://:secret@localhost:6379 -> redis://:***@localhost:6379
    """
    if not url:
        return url
    try:
        parsed = urlparse(url)
        if not parsed.password:
            return url
        netloc = parsed.hostname or ""
        if parsed.port:
            netloc = f"{netloc}:{parsed.port}"
        if parsed.username:
            netloc = f"{parsed.username}:***@{netloc}"
        else:
            netloc = f":***@{netloc}"
        return urlunparse(
            (parsed.scheme, netloc, parsed.path, parsed.params, parsed.query, parsed.fragment)
        )
    except ValueError:
        return "***url_parse_error***"


class Runtime:
    """Holds singleton service instances for the FastAPI app.

    Every component receives ``settings`` (or the values it needs) through its
    constructor; nothing below reads the environment on its own.
    """

    def __init__(self, settings: Optional[Settings] = None):
        self.settings = settings or get_settings()
        logger.info(
            "runtime_init_started",
            use_memory_store=self.settings.use_memory_store,
            test_mode=self.settings.test_mode,
        )

        store_type = "memory" if self.settings.use_memory_store else "postgres"
        try:
            if self.settings.use_memory_store:
                self.store = MemoryStore(seed_defaults=self.settings.seed_defaults)
            else:
                self.store = PostgresStore(
                    self.settings.database_url,
                    timeout_seconds=self.settings.store_timeout_seconds,
                    min_size=self.settings.database_pool_min,
                    max_size=self.settings.database_pool_max,
                    seed_defaults=self.settings.seed_defaults,
                )
            logger.info("runtime_store_initialized", store_type=store_type)
        except Exception as exc:
            logger.error(
                "runtime_store_init_failed",
                store_type=store_type,
                database_url=_mask_url_password(self.settings.database_url),
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise

        self.cache: TokenCacheBackend = self._build_cache()

        timeout = self.settings.store_timeout_seconds
        self.bounded_store = BoundedStore(self.store, timeout_seconds=timeout)
        self.issuer = TokenIssuer(
            self.settings.jwt_secret,
            issuer=self.settings.jwt_issuer,
            access_ttl_seconds=self.settings.access_token_ttl_seconds,
            store=self.bounded_store,
        )
        self.verifier = TokenVerifier(
            self.settings.jwt_secret, issuer=self.settings.jwt_issuer
        )
        self.revocation = RevocationRegistry(
            self.cache, self.bounded_store, timeout_seconds=timeout
        )
        self.audit = AuditLogger(self.bounded_store)
        self.auth = AuthService(
            self.bounded_store,
            self.revocation,
            self.issuer,
            self.verifier,
            self.audit,
            self.settings,
        )
        self.rbac = AccessControlService(self.bounded_store, self.revocation, self.audit)

        logger.info(
            "runtime_initialized",
            store_type=store_type,
            blacklist_backend=type(self.cache).__name__,
            access_token_ttl_seconds=self.settings.access_token_ttl_seconds,
        )

    def _build_cache(self) -> TokenCacheBackend:
        redis_error: Exception | None = None
        if self.settings.redis_url:
            try:
                # Sync client in test mode avoids binding to a per-test event loop
                if self.settings.test_mode:
                    cache: TokenCacheBackend = SyncRedisCache(
                        self.settings.redis_url,
                        socket_timeout=self.settings.store_timeout_seconds,
                    )
                else:
                    cache = RedisCache(
                        self.settings.redis_url,
                        socket_timeout=self.settings.store_timeout_seconds,
                    )
                cache.verify_connection()
                return cache
            except Exception as exc:
                redis_error = exc

        if not self.settings.test_mode and not self.settings.allow_redis_fallback_dev:
            raise RuntimeError(
                "Redis is required for the access-token blacklist; start Redis or set "
                "TEST_MODE=true/ALLOW_REDIS_FALLBACK_DEV=true for local fallback."
            ) from redis_error

        fallback_mode = "TEST_MODE" if self.settings.test_mode else "ALLOW_REDIS_FALLBACK_DEV"
        logger.warning(
            "redis_disabled_fallback",
            redis_url=_mask_url_password(self.settings.redis_url),
            error=str(redis_error) if redis_error else "redis_url_missing",
            message=(
                f"Running without Redis under {fallback_mode}; revoked access tokens "
                "are tracked in this process only."
            ),
            mode=fallback_mode,
        )
        return MemoryTokenCache()

    async def close(self) -> None:
        await self.audit.drain()
        await self.cache.close()
        if isinstance(self.store, PostgresStore):
            self.store.close()


runtime: Runtime | None = None
_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    """Get or create the Runtime singleton in a thread-safe manner.

    Double-checked locking: the unlocked read is the fast path once the
    runtime exists; the second check under the lock prevents two builds.
    """
    global runtime
    if runtime is not None:
        return runtime
    with _runtime_lock:
        if runtime is None:
            runtime = Runtime()
        return runtime


def reset_runtime_for_tests() -> Runtime:
    """Reinitialize the runtime singleton for isolated test runs."""
    global runtime

    with _runtime_lock:
        if runtime is not None and isinstance(runtime.cache, SyncRedisCache):
            runtime.cache.client.close()
        reset_settings_cache()
        settings = get_settings()
        if not settings.test_mode:
            raise RuntimeError("runtime reset is only allowed in TEST_MODE")
        runtime = Runtime(settings)
        return runtime
