"""Tests for the access-token blacklist and refresh-token revocation."""

import asyncio
from datetime import datetime, timedelta, timezone

import pytest

from authcentral.service.revocation import RevocationRegistry
from authcentral.storage.common import BoundedStore
from authcentral.storage.errors import StoreUnavailable
from authcentral.storage.memory import MemoryStore
from authcentral.storage.redis_cache import MemoryTokenCache, blacklist_key, ttl_millis


class HangingCache:
    async def blacklist_access_token(self, token, ttl_ms):
        await asyncio.sleep(5)
        return True

    async def is_access_token_blacklisted(self, token):
        await asyncio.sleep(5)
        return False

    async def ping(self):
        await asyncio.sleep(5)
        return True


class DownCache:
    async def blacklist_access_token(self, token, ttl_ms):
        raise StoreUnavailable("redis unavailable", backend="redis")

    async def is_access_token_blacklisted(self, token):
        raise StoreUnavailable("redis unavailable", backend="redis")

    async def ping(self):
        raise StoreUnavailable("redis unavailable", backend="redis")


def _registry(cache, timeout=0.05):
    return RevocationRegistry(
        cache, BoundedStore(MemoryStore(), timeout_seconds=2.0), timeout_seconds=timeout
    )


class TestTtlArithmetic:
    def test_rounds_down(self):
        assert ttl_millis(100.9999, now=100.0) == 999
        assert ttl_millis(101.0, now=100.0) == 1000

    def test_never_negative(self):
        assert ttl_millis(99.0, now=100.0) == 0

    def test_accepts_datetimes(self):
        now = datetime(2024, 1, 1, tzinfo=timezone.utc)
        expires = now + timedelta(seconds=30)
        assert ttl_millis(expires, now=now.timestamp()) == 30_000
        naive = expires.replace(tzinfo=None)
        assert ttl_millis(naive, now=now.timestamp()) == 30_000

    def test_key_hides_raw_token(self):
        key = blacklist_key("eyJhbGciOi.payload.sig")
        assert key.startswith("blacklist:")
        assert "payload" not in key
        assert len(key) == len("blacklist:") + 64


class TestBlacklistLifetime:
    async def test_entry_lives_exactly_as_long_as_token(self, make_services, fake_clock):
        services = make_services(clock=fake_clock)
        user = services.store.create_user("a@x.com", "hash")
        issued = services.issuer.issue_access_token(user.id, "a@x.com", [], [])
        claims = services.verifier.verify(issued.token)

        assert await services.revocation.blacklist(
            issued.token, services.verifier.remaining_ms(claims)
        )
        assert await services.revocation.is_blacklisted(issued.token)

        fake_clock.advance(899.5)
        assert await services.revocation.is_blacklisted(issued.token)

        fake_clock.advance(0.5)
        assert not await services.revocation.is_blacklisted(issued.token)
        fake_clock.advance(3600)
        assert not await services.revocation.is_blacklisted(issued.token)

    async def test_blacklisting_is_idempotent(self, services):
        assert await services.revocation.blacklist("tok", 60_000)
        assert await services.revocation.blacklist("tok", 60_000)
        assert await services.revocation.is_blacklisted("tok")

    @pytest.mark.parametrize("ttl_ms", [0, -5])
    async def test_non_positive_ttl_writes_nothing(self, services, ttl_ms):
        assert await services.revocation.blacklist("tok", ttl_ms) is False
        assert not await services.revocation.is_blacklisted("tok")

    async def test_unknown_token_is_not_blacklisted(self, services):
        assert not await services.revocation.is_blacklisted("never-seen")


class TestFailClosed:
    async def test_timeout_raises_unavailable(self):
        registry = _registry(HangingCache())
        with pytest.raises(StoreUnavailable):
            await registry.is_blacklisted("tok")
        with pytest.raises(StoreUnavailable):
            await registry.blacklist("tok", 1000)
        with pytest.raises(StoreUnavailable):
            await registry.ping()

    async def test_unreachable_cache_never_reports_valid(self, make_services):
        services = make_services(cache=DownCache())
        user = services.store.create_user("a@x.com", "hash")
        token = services.issuer.issue_access_token(user.id, "a@x.com", [], []).token

        with pytest.raises(StoreUnavailable):
            await services.auth.verify_token(token)
        with pytest.raises(StoreUnavailable):
            await services.auth.authenticate(f"Bearer {token}")


class TestRefreshRevocation:
    async def test_revoke_by_raw_token(self, services):
        user = services.store.create_user("a@x.com", "hash")
        raw = await services.issuer.issue_refresh_token(user.id, services.issuer.refresh_expiry(60))

        assert (await services.revocation.find_valid_refresh_token(raw)).user_id == user.id
        assert await services.revocation.revoke_refresh_token(raw) is True
        assert await services.revocation.revoke_refresh_token(raw) is False
        assert await services.revocation.find_valid_refresh_token(raw) is None

    async def test_purge_expired(self, make_services, fake_clock):
        cache = MemoryTokenCache(clock=fake_clock)
        services = make_services(cache=cache)
        user = services.store.create_user("a@x.com", "hash")
        now = datetime.now(timezone.utc)
        services.store.create_refresh_token(user.id, "old", now - timedelta(minutes=1))
        services.store.create_refresh_token(user.id, "live", now + timedelta(minutes=1))
        await cache.blacklist_access_token("tok", 1000)
        fake_clock.advance(2)

        assert await services.revocation.purge_expired() == 1
        assert [r.token_hash for r in services.store.refresh_tokens.values()] == ["live"]
        assert cache.purge_expired() == 0
