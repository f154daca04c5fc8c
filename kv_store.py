"""
kv_store.py — short-lived key-value storage for the OAuth handshake.

The store is the only server-side state the service keeps: pending
authorization state, framework authorization codes, issued grants and
registered clients. Expiry is enforced by the store itself.

  - RedisKeyValueStore: production backend (SET ... EX ... NX).
  - MemoryKeyValueStore: single-process backend for development and tests.
"""

import heapq
import logging
import time
from typing import Callable, Protocol

from redis.asyncio import Redis

logger = logging.getLogger("notion-kv")


class KeyValueStore(Protocol):
    async def get(self, key: str) -> str | None:
        ...

    async def put(self, key: str, value: str, ttl: int | None = None,
                  if_absent: bool = False) -> bool:
        """Store ``value``; return False if ``if_absent`` and the key exists."""
        ...

    async def delete(self, key: str) -> None:
        ...


class RedisKeyValueStore:
    """Redis-backed store. Values are kept as UTF-8 strings."""

    def __init__(self, redis: Redis):
        self.redis = redis

    @classmethod
    def from_url(cls, url: str) -> "RedisKeyValueStore":
        return cls(Redis.from_url(url, decode_responses=True))

    async def get(self, key: str) -> str | None:
        return await self.redis.get(key)

    async def put(self, key: str, value: str, ttl: int | None = None,
                  if_absent: bool = False) -> bool:
        result = await self.redis.set(key, value, ex=ttl, nx=if_absent)
        return bool(result)

    async def delete(self, key: str) -> None:
        await self.redis.delete(key)

    async def close(self) -> None:
        await self.redis.aclose()


class MemoryKeyValueStore:
    """In-process store with per-key expiry.

    Every write first drops entries whose deadline has passed, so keys that
    are never read again do not accumulate.
    """

    def __init__(self, clock: Callable[[], float] = time.monotonic):
        self._clock = clock
        self._data: dict[str, tuple[str, float | None]] = {}
        self._expiry: list[tuple[float, str]] = []

    def _live(self, key: str) -> str | None:
        entry = self._data.get(key)
        if entry is None:
            return None
        value, expires_at = entry
        if expires_at is not None and expires_at <= self._clock():
            del self._data[key]
            return None
        return value

    def _sweep(self) -> None:
        now = self._clock()
        while self._expiry and self._expiry[0][0] <= now:
            deadline, key = heapq.heappop(self._expiry)
            entry = self._data.get(key)
            # Skip heap entries left behind by an overwrite or delete.
            if entry is not None and entry[1] == deadline:
                del self._data[key]

    async def get(self, key: str) -> str | None:
        return self._live(key)

    async def put(self, key: str, value: str, ttl: int | None = None,
                  if_absent: bool = False) -> bool:
        self._sweep()
        if if_absent and self._live(key) is not None:
            return False
        expires_at = self._clock() + ttl if ttl is not None else None
        self._data[key] = (value, expires_at)
        if expires_at is not None:
            heapq.heappush(self._expiry, (expires_at, key))
        return True

    async def delete(self, key: str) -> None:
        self._data.pop(key, None)

    def __len__(self) -> int:
        return sum(1 for key in list(self._data) if self._live(key) is not None)
