"""
User-scoped read cache.

Wraps expensive reads with a JSON cache keyed per (scope, user, query) and
invalidated per (user, scope) through a registry set, so invalidation never
scans the key space.

Read path:
    cached value          -> HIT
    miss, first caller    -> runs the loader once, stores the result -> MISS
    miss, concurrent call -> awaits the first caller's load -> HIT, coalesced
    backend unreachable   -> runs the loader directly -> BYPASSED

Invariants:
    - Cache failures never reach the caller; they degrade to BYPASSED and
      trip the connection manager's breaker
    - One load per key is in flight at a time within this process
    - A load that started before an invalidation of its (scope, user) does
      not leave its result readable after that invalidation, including when
      the invalidation lands while the result is being written
    - A load stays in flight until its result is written
    - Every stored key is registered in its (scope, user) index, and the
      index outlives its members by registry_grace_seconds
"""

from __future__ import annotations

import asyncio
import json
import logging
import time
from collections.abc import Awaitable, Callable, Iterable, Mapping
from dataclasses import dataclass
from enum import Enum
from typing import Any, Generic, TypeVar

from ..config import CacheConfig
from ..errors import CacheUnavailableError
from .backend import CacheBackend
from .connection import CacheConnectionManager
from .keys import build_user_scoped_cache_key, parse_key, registry_key

logger = logging.getLogger(__name__)

T = TypeVar("T")


class CacheStatus(str, Enum):
    HIT = "HIT"
    MISS = "MISS"
    BYPASSED = "BYPASSED"


@dataclass
class CacheResult(Generic[T]):
    """A read result with cache diagnostics.

    Attributes:
        data: The value returned to the caller
        status: HIT, MISS or BYPASSED
        key: Cache key of the read
        coalesced: True when the value came from another caller's load
        elapsed_ms: Time spent in the cache layer including the load
    """

    data: T
    status: CacheStatus
    key: str
    coalesced: bool = False
    elapsed_ms: float = 0.0

    def server_timing(self) -> str:
        """Value for a Server-Timing response header."""
        return f'cache;desc="{self.status.value}";dur={self.elapsed_ms:.1f}'


def _mark_retrieved(future: asyncio.Future) -> None:
    if not future.cancelled():
        future.exception()


class ReadCache:
    """Single-flight JSON read cache.

    Example:
        >>> cache = ReadCache(connection, CacheConfig())
        >>> key = cache.key_for("expenses", "u1", {"page": 1})
        >>> result = await cache.get_or_set_json_with_meta(key, 180, load_expenses)
        >>> await cache.invalidate_users_cache(["u1", "u2"], scopes_for("expense"))
    """

    def __init__(self, connection: CacheConnectionManager, config: CacheConfig | None = None) -> None:
        self.connection = connection
        self.config = config or connection.config
        self._inflight: dict[str, asyncio.Future] = {}
        self._writes: dict[str, tuple[int, int, int]] = {}
        self._generations: dict[tuple[str, str], int] = {}
        self._scope_epochs: dict[str, int] = {}
        self._epoch = 0

        self._hits = 0
        self._misses = 0
        self._bypassed = 0
        self._coalesced = 0

    def key_for(
        self,
        scope: str,
        user_id: str,
        query: Mapping[str, Any] | str | None = None,
    ) -> str:
        return build_user_scoped_cache_key(scope, user_id, query, prefix=self.config.key_prefix)

    def _generation(self, key: str) -> tuple[tuple[str, str] | None, tuple[int, int, int]]:
        parsed = parse_key(key, self.config.key_prefix)
        if parsed is None:
            return None, (self._epoch, 0, 0)
        return parsed, (
            self._epoch,
            self._scope_epochs.get(parsed[0], 0),
            self._generations.get(parsed, 0),
        )

    async def get_or_set_json(
        self,
        key: str,
        ttl_seconds: int,
        loader: Callable[[], Awaitable[T]],
    ) -> T:
        result = await self.get_or_set_json_with_meta(key, ttl_seconds, loader)
        return result.data

    async def get_or_set_json_with_meta(
        self,
        key: str,
        ttl_seconds: int,
        loader: Callable[[], Awaitable[T]],
    ) -> CacheResult[T]:
        """Return the cached value for key, loading and storing it on a miss.

        Args:
            key: Cache key (see key_for)
            ttl_seconds: Lifetime of a stored value
            loader: Coroutine function producing a JSON-serializable value

        Returns:
            CacheResult with the data and how it was obtained

        Raises:
            Whatever the loader raises; cache errors are never raised
        """
        started = time.perf_counter()

        def _result(data: Any, status: CacheStatus, coalesced: bool = False) -> CacheResult[T]:
            return CacheResult(
                data=data,
                status=status,
                key=key,
                coalesced=coalesced,
                elapsed_ms=(time.perf_counter() - started) * 1000.0,
            )

        if key in self._inflight:
            return _result(await self._join(key), CacheStatus.HIT, coalesced=True)

        backend = await self.connection.acquire()
        if backend is None:
            self._bypassed += 1
            return _result(await loader(), CacheStatus.BYPASSED)

        try:
            cached = await backend.get(key)
        except CacheUnavailableError as e:
            await self.connection.report_failure(e)
            self._bypassed += 1
            return _result(await loader(), CacheStatus.BYPASSED)

        if cached is not None and not self._stale_write_pending(key):
            self._hits += 1
            return _result(json.loads(cached), CacheStatus.HIT)

        if key in self._inflight:
            return _result(await self._join(key), CacheStatus.HIT, coalesced=True)

        future: asyncio.Future = asyncio.get_running_loop().create_future()
        future.add_done_callback(_mark_retrieved)
        self._inflight[key] = future
        scope_user, generation = self._generation(key)

        # The load stays in flight until its value is written, so callers
        # arriving during the write join it instead of loading again.
        try:
            try:
                data = await loader()
            except asyncio.CancelledError:
                future.cancel()
                raise
            except Exception as e:
                future.set_exception(e)
                raise
            future.set_result(data)

            self._misses += 1
            if self._generation(key)[1] != generation:
                logger.debug("Skipping cache write for load invalidated in flight", extra={"key": key})
            else:
                await self._store(backend, key, scope_user, data, ttl_seconds, generation)
        finally:
            if self._inflight.get(key) is future:
                del self._inflight[key]
        return _result(data, CacheStatus.MISS)

    async def _join(self, key: str) -> Any:
        self._coalesced += 1
        return await asyncio.shield(self._inflight[key])

    def _stale_write_pending(self, key: str) -> bool:
        pending = self._writes.get(key)
        return pending is not None and pending != self._generation(key)[1]

    async def _store(
        self,
        backend: CacheBackend,
        key: str,
        scope_user: tuple[str, str] | None,
        data: Any,
        ttl_seconds: int,
        generation: tuple[int, int, int],
    ) -> None:
        self._writes[key] = generation
        try:
            await backend.set(key, json.dumps(data, separators=(",", ":")), ttl_seconds)
            if scope_user is not None:
                scope, user_id = scope_user
                await backend.index_add(
                    registry_key(scope, user_id, self.config.key_prefix),
                    key,
                    ttl_seconds + self.config.registry_grace_seconds,
                )
            if self._generation(key)[1] != generation:
                # Invalidated while writing: the invalidation could not see this key yet
                logger.debug("Dropping cache write invalidated during store", extra={"key": key})
                await backend.delete(key)
        except CacheUnavailableError as e:
            logger.warning(f"Cache write failed, continuing without cache: {e.message}")
            await self.connection.report_failure(e)
        finally:
            if self._writes.get(key) == generation:
                del self._writes[key]

    async def invalidate_users_cache(
        self,
        user_ids: Iterable[str],
        scopes: Iterable[str],
    ) -> int:
        """Delete every cached entry of the given users in the given scopes.

        Returns:
            Number of backend keys deleted (0 when the cache is unavailable)
        """
        users = sorted({str(u) for u in user_ids if u})
        scope_names = sorted({getattr(s, "value", s) for s in scopes})
        if not users or not scope_names:
            return 0

        pairs = [(scope, user) for user in users for scope in scope_names]
        for pair in pairs:
            self._generations[pair] = self._generations.get(pair, 0) + 1
        for key in list(self._inflight):
            if parse_key(key, self.config.key_prefix) in pairs:
                del self._inflight[key]

        backend = await self.connection.acquire()
        if backend is None:
            logger.warning(
                "Cache unavailable, skipping invalidation",
                extra={"users": len(users), "scopes": scope_names},
            )
            return 0

        try:
            to_delete: list[str] = []
            for scope, user in pairs:
                index = registry_key(scope, user, self.config.key_prefix)
                to_delete.extend(await backend.index_members(index))
                to_delete.append(index)
            deleted = await backend.delete(*to_delete)
        except CacheUnavailableError as e:
            logger.warning(f"Cache invalidation failed: {e.message}")
            await self.connection.report_failure(e)
            return 0

        logger.debug(
            "Invalidated cache scopes",
            extra={"users": len(users), "scopes": scope_names, "deleted": deleted},
        )
        return deleted

    async def purge(self, scope: str | None = None) -> int:
        """Delete every cached entry, or every entry of one scope.

        Operator tool: this scans the key space, unlike invalidate_users_cache.

        Returns:
            Number of backend keys deleted (0 when the cache is unavailable)
        """
        prefix = self.config.key_prefix
        scope_name = getattr(scope, "value", scope)
        if scope_name is None:
            prefixes = [f"{prefix}:"]
        else:
            prefixes = [f"{prefix}:{scope_name}:", f"{prefix}:reg:{scope_name}:"]

        for key in list(self._inflight):
            parsed = parse_key(key, prefix)
            if scope_name is None or (parsed is not None and parsed[0] == scope_name):
                del self._inflight[key]
        if scope_name is None:
            self._epoch += 1
        else:
            self._scope_epochs[scope_name] = self._scope_epochs.get(scope_name, 0) + 1

        backend = await self.connection.acquire()
        if backend is None:
            logger.warning("Cache unavailable, skipping purge", extra={"scope": scope_name})
            return 0

        try:
            deleted = 0
            for key_prefix in prefixes:
                deleted += await backend.delete_prefix(key_prefix)
        except CacheUnavailableError as e:
            logger.warning(f"Cache purge failed: {e.message}")
            await self.connection.report_failure(e)
            return 0

        logger.info("Purged cache", extra={"scope": scope_name or "*", "deleted": deleted})
        return deleted

    @property
    def stats(self) -> dict[str, int]:
        """Get cache statistics."""
        return {
            "hits": self._hits,
            "misses": self._misses,
            "bypassed": self._bypassed,
            "coalesced": self._coalesced,
            "in_flight": len(self._inflight),
        }
