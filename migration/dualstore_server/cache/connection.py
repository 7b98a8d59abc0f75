"""
Cache connection manager with a circuit breaker.

Owns the cache backend for the lifetime of the service. A failed connect or
a failed call disables the cache for retry_after_ms; the next acquire()
after the cooldown reconnects.

States:
    idle     -> no backend yet; the next acquire() connects
    ready    -> backend connected and handed out
    disabled -> cooling down after a failure; acquire() returns None

Invariants:
    - At most one connect attempt is in flight; concurrent acquire() calls
      share it
    - acquire() never raises; an unreachable backend yields None
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Callable

from ..config import CacheConfig
from ..errors import CacheUnavailableError
from .backend import CacheBackend

logger = logging.getLogger(__name__)

STATE_IDLE = "idle"
STATE_READY = "ready"
STATE_DISABLED = "disabled"


class CacheConnectionManager:
    """Hands out a connected cache backend, or None while disabled.

    Example:
        >>> async with CacheConnectionManager(config, factory) as manager:
        ...     backend = await manager.acquire()
        ...     if backend is not None:
        ...         await backend.get("key")
    """

    def __init__(
        self,
        config: CacheConfig,
        factory: Callable[[], CacheBackend],
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.config = config
        self._factory = factory
        self._clock = clock
        self._backend: CacheBackend | None = None
        self._connecting: asyncio.Future | None = None
        self._disabled_until = 0.0
        self._failure_count = 0

    @property
    def state(self) -> str:
        if self._disabled_until > self._clock():
            return STATE_DISABLED
        if self._backend is not None:
            return STATE_READY
        return STATE_IDLE

    async def acquire(self) -> CacheBackend | None:
        """Return the connected backend, or None while the cache is unavailable."""
        if self._disabled_until:
            if self._clock() < self._disabled_until:
                return None
            self._disabled_until = 0.0
            logger.info("Cache cooldown elapsed, reconnecting")

        if self._backend is not None:
            return self._backend

        if self._connecting is not None:
            return await asyncio.shield(self._connecting)

        self._connecting = asyncio.get_running_loop().create_future()
        try:
            backend = await self._connect()
            self._connecting.set_result(backend)
            return backend
        finally:
            if not self._connecting.done():
                self._connecting.set_result(None)
            self._connecting = None

    async def _connect(self) -> CacheBackend | None:
        try:
            backend = self._factory()
        except ValueError as e:
            self._disable(f"Cache backend misconfigured: {e}")
            return None

        try:
            await backend.ping()
        except CacheUnavailableError as e:
            await self._close_quietly(backend)
            self._disable(f"Cache connection failed: {e.message}")
            return None

        self._backend = backend
        logger.info("Cache backend connected", extra={"backend": type(backend).__name__})
        return backend

    async def report_failure(self, error: Exception) -> None:
        """Disable the cache after a failed call and drop the backend."""
        backend, self._backend = self._backend, None
        if backend is not None:
            await self._close_quietly(backend)
        self._disable(f"Cache call failed: {error}")

    def _disable(self, reason: str) -> None:
        self._failure_count += 1
        self._disabled_until = self._clock() + self.config.retry_after_ms / 1000.0
        logger.warning(
            f"{reason}; caching disabled for {self.config.retry_after_ms / 1000.0:.0f}s",
            extra={"failure_count": self._failure_count},
        )

    async def _close_quietly(self, backend: CacheBackend) -> None:
        try:
            await backend.close()
        except CacheUnavailableError as e:
            logger.debug(f"Ignoring cache close error: {e.message}")

    async def close(self) -> None:
        if self._backend is not None:
            await self._close_quietly(self._backend)
            self._backend = None

    async def __aenter__(self) -> CacheConnectionManager:
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.close()

    @property
    def stats(self) -> dict[str, object]:
        """Get connection statistics."""
        return {"state": self.state, "failure_count": self._failure_count}
