from __future__ import annotations

import asyncio
from typing import Optional, Protocol

from authcentral.logging import get_logger
from authcentral.storage.common import BoundedStore, hash_token
from authcentral.storage.errors import StoreUnavailable
from authcentral.storage.models import RefreshTokenRecord

logger = get_logger(__name__)


class TokenCache(Protocol):
    async def blacklist_access_token(self, token: str, ttl_ms: int) -> bool: ...

    async def is_access_token_blacklisted(self, token: str) -> bool: ...

    async def ping(self) -> bool: ...


class RevocationRegistry:
    """Revoked access tokens (key-value blacklist) and refresh-token revocation.

    Every call is bounded by ``timeout_seconds``. On timeout or connection
    loss ``StoreUnavailable`` propagates; ``is_blacklisted`` never answers
    False for a lookup it could not perform.
    """

    def __init__(
        self, cache: TokenCache, store: BoundedStore, *, timeout_seconds: float
    ) -> None:
        self.cache = cache
        self.store = store
        self.timeout_seconds = timeout_seconds

    async def _bounded(self, awaitable):
        try:
            return await asyncio.wait_for(awaitable, self.timeout_seconds)
        except asyncio.TimeoutError as exc:
            raise StoreUnavailable("token cache timed out", backend="redis") from exc

    async def blacklist(self, token: str, ttl_ms: int) -> bool:
        """Blacklist ``token`` for ``ttl_ms`` milliseconds.

        ``ttl_ms`` must be the token's remaining lifetime so the entry
        expires with the token. Nothing is written for a non-positive TTL.
        """
        written = await self._bounded(self.cache.blacklist_access_token(token, ttl_ms))
        if written:
            logger.info("access_token_blacklisted", ttl_ms=ttl_ms)
        return written

    async def is_blacklisted(self, token: str) -> bool:
        return await self._bounded(self.cache.is_access_token_blacklisted(token))

    async def find_valid_refresh_token(self, raw_token: str) -> Optional[RefreshTokenRecord]:
        """Unrevoked, unexpired record for ``raw_token`` with its owner's active flag."""
        return await self.store.find_valid_refresh_token(hash_token(raw_token))

    async def revoke_refresh_token(self, raw_token: str) -> bool:
        return await self.store.revoke_refresh_token(hash_token(raw_token))

    async def revoke_all_for_user(self, user_id: str) -> int:
        revoked = await self.store.revoke_all_refresh_tokens(user_id)
        logger.info("refresh_tokens_revoked_for_user", user_id=user_id, count=revoked)
        return revoked

    async def purge_expired(self) -> int:
        """Delete expired refresh-token rows and drop stale local blacklist entries."""
        removed = await self.store.delete_expired_refresh_tokens()
        purge_local = getattr(self.cache, "purge_expired", None)
        if purge_local is not None:
            purge_local()
        return removed

    async def ping(self) -> bool:
        return await self._bounded(self.cache.ping())
