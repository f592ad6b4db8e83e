"""Key/value stores behind :class:`~voxdispatch.cache.ContentCache`."""

from __future__ import annotations

import asyncio
import logging
import time
from abc import ABC, abstractmethod
from collections.abc import Callable
from dataclasses import dataclass

import redis.asyncio as aioredis

logger = logging.getLogger(__name__)

__all__ = ["CacheBackend", "MemoryCacheBackend", "RedisCacheBackend"]


class CacheBackend(ABC):
    """Single-key upsert store with per-entry expiry."""

    name: str = "backend"

    @abstractmethod
    async def get(self, key: str) -> str | None: ...

    @abstractmethod
    async def set(self, key: str, value: str, ttl_sec: float) -> None: ...

    @abstractmethod
    async def delete(self, key: str) -> None: ...

    async def purge_expired(self) -> int:
        return 0

    async def ping(self) -> bool:
        return True

    async def close(self) -> None:
        return None


@dataclass(slots=True)
class _Entry:
    value: str
    expires_at: float


class MemoryCacheBackend(CacheBackend):
    """Process-local store; expired entries are dropped when touched or purged."""

    name = "memory"

    def __init__(self, clock: Callable[[], float] = time.monotonic, max_entries: int | None = None):
        self._clock = clock
        self._max_entries = max_entries
        self._entries: dict[str, _Entry] = {}
        self._lock = asyncio.Lock()

    async def get(self, key: str) -> str | None:
        async with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return None
            if entry.expires_at <= self._clock():
                del self._entries[key]
                return None
            return entry.value

    async def set(self, key: str, value: str, ttl_sec: float) -> None:
        async with self._lock:
            self._entries[key] = _Entry(value=value, expires_at=self._clock() + float(ttl_sec))
            if self._max_entries is not None and len(self._entries) > self._max_entries:
                self._evict_locked()

    async def delete(self, key: str) -> None:
        async with self._lock:
            self._entries.pop(key, None)

    async def purge_expired(self) -> int:
        async with self._lock:
            return self._purge_locked()

    def _purge_locked(self) -> int:
        now = self._clock()
        expired = [key for key, entry in self._entries.items() if entry.expires_at <= now]
        for key in expired:
            del self._entries[key]
        return len(expired)

    def _evict_locked(self) -> None:
        self._purge_locked()
        # Still over budget: drop the entries closest to expiry.
        overflow = len(self._entries) - (self._max_entries or 0)
        if overflow > 0:
            for key, _ in sorted(self._entries.items(), key=lambda kv: kv[1].expires_at)[:overflow]:
                del self._entries[key]

    def __len__(self) -> int:
        return len(self._entries)


class RedisCacheBackend(CacheBackend):
    """Shared store using ``SETEX`` so Redis expires entries itself."""

    name = "redis"

    def __init__(self, url: str = "redis://localhost:6379/0", client: aioredis.Redis | None = None):
        self.url = url
        self._client = client or aioredis.from_url(url, decode_responses=True)

    async def get(self, key: str) -> str | None:
        value = await self._client.get(key)
        if isinstance(value, bytes):
            return value.decode("utf-8")
        return value

    async def set(self, key: str, value: str, ttl_sec: float) -> None:
        await self._client.setex(key, max(1, int(ttl_sec)), value)

    async def delete(self, key: str) -> None:
        await self._client.delete(key)

    async def ping(self) -> bool:
        return bool(await self._client.ping())

    async def close(self) -> None:
        await self._client.aclose()
