"""Keyed cache/counter abstraction shared by the extraction client and read side.

The extraction result cache, the circuit-breaker counters, the statistics
cache and the submission rate limiter all go through ``CacheBackend`` so a
shared store can replace the in-process one without touching callers.
"""
from __future__ import annotations

import asyncio
import logging
import time
from typing import Any, Callable, Protocol

logger = logging.getLogger(__name__)


class CacheBackend(Protocol):
    """Minimal async key/value store with TTLs and atomic increments."""

    async def get(self, key: str, default: Any = None) -> Any:
        ...

    async def set(self, key: str, value: Any, ttl: int | None = None) -> None:
        ...

    async def delete(self, key: str) -> None:
        ...

    async def increment(
        self, key: str, amount: int = 1, ttl: int | None = None, *, refresh_ttl: bool = False
    ) -> int:
        ...


class MemoryCache:
    """In-process ``CacheBackend``.

    - Per-key absolute expiry (``ttl`` seconds from the write).
    - ``increment`` keeps the existing expiry when the key is live and starts
      a fresh one otherwise; ``refresh_ttl=True`` restarts it on every call.
    - One ``asyncio.Lock`` serializes every operation, which makes
      read-modify-write sequences like ``increment`` atomic across requests.
    """

    def __init__(self, clock: Callable[[], float] = time.monotonic) -> None:
        self._clock = clock
        self._lock = asyncio.Lock()
        # key -> (value, expires_at or None)
        self._items: dict[str, tuple[Any, float | None]] = {}

    def _expires_at(self, ttl: int | None) -> float | None:
        return None if ttl is None else self._clock() + ttl

    def _get_unlocked(self, key: str) -> tuple[Any, float | None] | None:
        item = self._items.get(key)
        if item is None:
            return None
        _, expires_at = item
        if expires_at is not None and expires_at <= self._clock():
            del self._items[key]
            return None
        return item

    async def get(self, key: str, default: Any = None) -> Any:
        async with self._lock:
            item = self._get_unlocked(key)
            return default if item is None else item[0]

    async def set(self, key: str, value: Any, ttl: int | None = None) -> None:
        async with self._lock:
            self._items[key] = (value, self._expires_at(ttl))

    async def delete(self, key: str) -> None:
        async with self._lock:
            self._items.pop(key, None)

    async def increment(
        self, key: str, amount: int = 1, ttl: int | None = None, *, refresh_ttl: bool = False
    ) -> int:
        async with self._lock:
            item = self._get_unlocked(key)
            if item is None:
                value, expires_at = amount, self._expires_at(ttl)
            else:
                value = int(item[0]) + amount
                expires_at = self._expires_at(ttl) if refresh_ttl else item[1]
            self._items[key] = (value, expires_at)
            return value

    async def clear(self) -> None:
        async with self._lock:
            self._items.clear()


_default_cache: MemoryCache | None = None


def get_cache() -> CacheBackend:
    """Process-wide cache singleton (FastAPI dependency)."""
    global _default_cache
    if _default_cache is None:
        _default_cache = MemoryCache()
        logger.info("Using in-process memory cache")
    return _default_cache
