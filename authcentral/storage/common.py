"""Helpers shared by the storage backends and the services that call them."""

from __future__ import annotations

import asyncio
import hashlib
from functools import partial
from ipaddress import ip_address
from typing import Any, Awaitable, Callable, Optional, TypeVar

from authcentral.storage.errors import StoreUnavailable

T = TypeVar("T")


def hash_token(raw: str) -> str:
    """One-way digest under which refresh tokens are persisted (hex SHA-256)."""
    return hashlib.sha256(raw.encode()).hexdigest()


def normalize_ip(value: Optional[str]) -> Optional[str]:
    """Return a canonical IP string, or None for anything that is not an IP."""
    if not value:
        return None
    try:
        return str(ip_address(value.strip()))
    except ValueError:
        return None


class BoundedStore:
    """Async view of a blocking store with a deadline on every call.

    Attribute access returns an awaitable wrapper around the store method, so
    ``await bounded.get_user(user_id)`` runs ``store.get_user`` in a worker
    thread. The call either returns the store's answer or raises
    ``StoreUnavailable``; a timeout is never reported as "not found".
    """

    def __init__(self, store: Any, *, timeout_seconds: float) -> None:
        self.store = store
        self.timeout_seconds = timeout_seconds

    async def call(self, func: Callable[..., T], *args: Any, **kwargs: Any) -> T:
        try:
            return await asyncio.wait_for(
                asyncio.to_thread(partial(func, *args, **kwargs)),
                self.timeout_seconds,
            )
        except asyncio.TimeoutError as exc:
            raise StoreUnavailable(
                f"{getattr(func, '__name__', 'store call')} timed out", backend="database"
            ) from exc

    def __getattr__(self, name: str) -> Callable[..., Awaitable[Any]]:
        func = getattr(self.store, name)

        async def bounded(*args: Any, **kwargs: Any) -> Any:
            return await self.call(func, *args, **kwargs)

        bounded.__name__ = name
        return bounded


__all__ = ["BoundedStore", "hash_token", "normalize_ip"]
