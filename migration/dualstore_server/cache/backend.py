"""
Cache backends.

The read cache talks to a key-value backend through the CacheBackend
protocol:
- RedisCacheBackend: redis.asyncio client (production)
- InMemoryCacheBackend: process-local dictionaries (tests, local dev)

Invariants:
    - Backends raise only CacheUnavailableError on connectivity failures
    - Values are opaque strings; JSON encoding is the cache layer's job
    - index_add() only ever extends an index's expiry
"""

from __future__ import annotations

import logging
import time
from abc import abstractmethod
from collections.abc import Awaitable, Callable
from typing import Any, Protocol, TypeVar, runtime_checkable

import redis.asyncio as redis
from redis.exceptions import RedisError

from ..errors import CacheUnavailableError

logger = logging.getLogger(__name__)

T = TypeVar("T")


@runtime_checkable
class CacheBackend(Protocol):
    """Protocol for cache backends."""

    @abstractmethod
    async def get(self, key: str) -> str | None:
        ...

    @abstractmethod
    async def set(self, key: str, value: str, ttl_seconds: int) -> None:
        ...

    @abstractmethod
    async def delete(self, *keys: str) -> int:
        """Delete keys, returning how many existed."""
        ...

    @abstractmethod
    async def delete_prefix(self, prefix: str) -> int:
        """Delete every key starting with prefix (operator use only)."""
        ...

    @abstractmethod
    async def index_add(self, index_key: str, member: str, ttl_seconds: int) -> None:
        """Add a member to a set and make the set live at least ttl_seconds."""
        ...

    @abstractmethod
    async def index_members(self, index_key: str) -> set[str]:
        ...

    @abstractmethod
    async def ping(self) -> bool:
        ...

    @abstractmethod
    async def close(self) -> None:
        ...


class InMemoryCacheBackend:
    """Process-local cache backend.

    Example:
        >>> backend = InMemoryCacheBackend()
        >>> await backend.set("k", "1", ttl_seconds=60)
        >>> await backend.get("k")
        '1'
    """

    def __init__(self, clock: Callable[[], float] = time.monotonic) -> None:
        self._clock = clock
        self._values: dict[str, tuple[str, float]] = {}
        self._sets: dict[str, tuple[set[str], float]] = {}
        self._unavailable = False
        self.call_count = 0

    def _check(self) -> None:
        self.call_count += 1
        if self._unavailable:
            raise CacheUnavailableError("In-memory cache marked unavailable")

    def _expired(self, expires_at: float) -> bool:
        return expires_at <= self._clock()

    async def get(self, key: str) -> str | None:
        self._check()
        entry = self._values.get(key)
        if entry is None:
            return None
        value, expires_at = entry
        if self._expired(expires_at):
            del self._values[key]
            return None
        return value

    async def set(self, key: str, value: str, ttl_seconds: int) -> None:
        self._check()
        self._values[key] = (value, self._clock() + ttl_seconds)

    async def delete(self, *keys: str) -> int:
        self._check()
        removed = 0
        for key in keys:
            if self._values.pop(key, None) is not None:
                removed += 1
            if self._sets.pop(key, None) is not None:
                removed += 1
        return removed

    async def delete_prefix(self, prefix: str) -> int:
        self._check()
        keys = [k for k in list(self._values) + list(self._sets) if k.startswith(prefix)]
        return await self.delete(*keys)

    async def index_add(self, index_key: str, member: str, ttl_seconds: int) -> None:
        self._check()
        members, expires_at = self._sets.get(index_key, (set(), 0.0))
        if self._expired(expires_at):
            members = set()
        members.add(member)
        self._sets[index_key] = (members, max(expires_at, self._clock() + ttl_seconds))

    async def index_members(self, index_key: str) -> set[str]:
        self._check()
        entry = self._sets.get(index_key)
        if entry is None:
            return set()
        members, expires_at = entry
        if self._expired(expires_at):
            del self._sets[index_key]
            return set()
        return set(members)

    async def ping(self) -> bool:
        self._check()
        return True

    async def close(self) -> None:
        pass

    # Testing helpers

    def set_unavailable(self, unavailable: bool = True) -> None:
        """Make every call raise CacheUnavailableError."""
        self._unavailable = unavailable

    def keys(self) -> list[str]:
        """Live value keys."""
        return [k for k, (_, exp) in self._values.items() if not self._expired(exp)]


class RedisCacheBackend:
    """Redis cache backend built on redis.asyncio.

    Example:
        >>> backend = RedisCacheBackend.from_url("redis://localhost:6379/0")
        >>> await backend.ping()
        True
    """

    def __init__(self, client: redis.Redis) -> None:
        self._client = client

    @classmethod
    def from_url(cls, url: str, connect_timeout_seconds: float = 5.0) -> RedisCacheBackend:
        client = redis.from_url(
            url,
            decode_responses=True,
            socket_connect_timeout=connect_timeout_seconds,
            socket_timeout=connect_timeout_seconds,
        )
        return cls(client)

    async def _call(self, operation: str, call: Callable[[], Awaitable[T]]) -> T:
        try:
            return await call()
        except RedisError as e:
            raise CacheUnavailableError(f"Redis {operation} failed: {e}") from e

    async def get(self, key: str) -> str | None:
        return await self._call("get", lambda: self._client.get(key))

    async def set(self, key: str, value: str, ttl_seconds: int) -> None:
        await self._call("set", lambda: self._client.set(key, value, ex=ttl_seconds))

    async def delete(self, *keys: str) -> int:
        if not keys:
            return 0
        return await self._call("delete", lambda: self._client.delete(*keys))

    async def delete_prefix(self, prefix: str) -> int:
        async def _scan_delete() -> int:
            removed = 0
            batch: list[str] = []
            async for key in self._client.scan_iter(match=f"{prefix}*", count=500):
                batch.append(key)
                if len(batch) >= 500:
                    removed += await self._client.delete(*batch)
                    batch = []
            if batch:
                removed += await self._client.delete(*batch)
            return removed

        return await self._call("delete_prefix", _scan_delete)

    async def index_add(self, index_key: str, member: str, ttl_seconds: int) -> None:
        async def _add() -> None:
            async with self._client.pipeline(transaction=False) as pipe:
                pipe.sadd(index_key, member)
                pipe.ttl(index_key)
                _, remaining = await pipe.execute()
            if remaining < ttl_seconds:
                await self._client.expire(index_key, ttl_seconds)

        await self._call("index_add", _add)

    async def index_members(self, index_key: str) -> set[str]:
        members: Any = await self._call("smembers", lambda: self._client.smembers(index_key))
        return set(members)

    async def ping(self) -> bool:
        return bool(await self._call("ping", lambda: self._client.ping()))

    async def close(self) -> None:
        try:
            await self._client.aclose()
        except RedisError as e:
            logger.warning(f"Error closing Redis client: {e}")
