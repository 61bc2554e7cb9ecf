from __future__ import annotations

import hashlib
import threading
import time
from datetime import datetime, timezone
from typing import Callable, Dict, Optional

import redis.asyncio as aioredis
from redis import Redis
from redis.exceptions import RedisError

from authcentral.logging import get_logger
from authcentral.storage.errors import StoreUnavailable

logger = get_logger(__name__)

_BLACKLIST_PREFIX = "blacklist:"


def blacklist_key(token: str) -> str:
    """Key for a revoked access token.

    The token is hashed so raw credentials never sit in Redis and key length
    stays fixed.
    """
    return _BLACKLIST_PREFIX + hashlib.sha256(token.encode()).hexdigest()


def ttl_millis(expires_at: datetime | float, *, now: Optional[float] = None) -> int:
    """Milliseconds until ``expires_at``, rounded down and never negative.

    Rounding down keeps a blacklist entry from outliving the token it revokes.
    """
    if isinstance(expires_at, datetime):
        if expires_at.tzinfo is None:
            expires_at = expires_at.replace(tzinfo=timezone.utc)
        expires_ts = expires_at.timestamp()
    else:
        expires_ts = float(expires_at)
    current = time.time() if now is None else now
    return max(0, int((expires_ts - current) * 1000))


class RedisCache:
    """Async Redis wrapper holding the access-token blacklist."""

    def __init__(self, redis_url: str, *, socket_timeout: float = 5.0):
        self.redis_url = redis_url
        self.socket_timeout = socket_timeout
        self.client = aioredis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )

    def verify_connection(self) -> None:
        """Assert Redis connectivity before serving requests."""
        # Short-lived sync client so the async one is not bound to a temporary loop
        sync_client = Redis.from_url(
            self.redis_url,
            decode_responses=True,
            socket_timeout=self.socket_timeout,
            socket_connect_timeout=self.socket_timeout,
        )
        try:
            sync_client.ping()
        finally:
            sync_client.close()

    async def ping(self) -> bool:
        try:
            return bool(await self.client.ping())
        except (RedisError, OSError) as exc:
            raise StoreUnavailable("redis unavailable", backend="redis") from exc

    async def blacklist_access_token(self, token: str, ttl_ms: int) -> bool:
        """Blacklist ``token`` for ``ttl_ms`` milliseconds.

        SET with PX writes the value and its expiry in one command. Returns
        False without writing when the token has no remaining lifetime.
        """
        if ttl_ms <= 0:
            return False
        try:
            await self.client.set(blacklist_key(token), "1", px=ttl_ms)
        except (RedisError, OSError) as exc:
            logger.error("blacklist_write_failed", error=str(exc))
            raise StoreUnavailable("redis unavailable", backend="redis") from exc
        return True

    async def is_access_token_blacklisted(self, token: str) -> bool:
        try:
            return bool(await self.client.exists(blacklist_key(token)))
        except (RedisError, OSError) as exc:
            logger.error("blacklist_read_failed", error=str(exc))
            raise StoreUnavailable("redis unavailable", backend="redis") from exc

    async def close(self) -> None:
        """Close Redis connection pool. Call when shutting down or resetting runtime."""
        await self.client.aclose()
        await self.client.connection_pool.disconnect()


class SyncRedisCache:
    """Synchronous Redis wrapper for use in tests.

    Uses a synchronous client to avoid event loop binding issues under
    pytest, but exposes the same awaitable methods as ``RedisCache``.
    """

    def __init__(self, redis_url: str, *, socket_timeout: float = 5.0):
        self.redis_url = redis_url
        self.client = Redis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )

    def verify_connection(self) -> None:
        self.client.ping()

    async def ping(self) -> bool:
        try:
            return bool(self.client.ping())
        except (RedisError, OSError) as exc:
            raise StoreUnavailable("redis unavailable", backend="redis") from exc

    async def blacklist_access_token(self, token: str, ttl_ms: int) -> bool:
        if ttl_ms <= 0:
            return False
        try:
            self.client.set(blacklist_key(token), "1", px=ttl_ms)
        except (RedisError, OSError) as exc:
            raise StoreUnavailable("redis unavailable", backend="redis") from exc
        return True

    async def is_access_token_blacklisted(self, token: str) -> bool:
        try:
            return bool(self.client.exists(blacklist_key(token)))
        except (RedisError, OSError) as exc:
            raise StoreUnavailable("redis unavailable", backend="redis") from exc

    async def close(self) -> None:
        self.client.close()


class MemoryTokenCache:
    """Process-local blacklist used when Redis is disabled (TEST_MODE or dev fallback).

    Entries carry an absolute deadline and are dropped lazily on lookup, which
    mirrors Redis key expiry. Not shared across processes.
    """

    def __init__(self, *, clock: Callable[[], float] = time.time) -> None:
        self._clock = clock
        self._entries: Dict[str, float] = {}
        self._lock = threading.Lock()

    def verify_connection(self) -> None:
        return None

    async def ping(self) -> bool:
        return True

    async def blacklist_access_token(self, token: str, ttl_ms: int) -> bool:
        if ttl_ms <= 0:
            return False
        deadline = self._clock() + ttl_ms / 1000.0
        with self._lock:
            self._entries[blacklist_key(token)] = deadline
        return True

    async def is_access_token_blacklisted(self, token: str) -> bool:
        key = blacklist_key(token)
        with self._lock:
            deadline = self._entries.get(key)
            if deadline is None:
                return False
            if deadline <= self._clock():
                self._entries.pop(key, None)
                return False
            return True

    def purge_expired(self) -> int:
        now = self._clock()
        with self._lock:
            expired = [key for key, deadline in self._entries.items() if deadline <= now]
            for key in expired:
                self._entries.pop(key, None)
            return len(expired)

    async def close(self) -> None:
        with self._lock:
            self._entries.clear()
