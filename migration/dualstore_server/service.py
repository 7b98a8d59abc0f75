"""
DualStore service wiring.

Builds every component from a ServerConfig and owns their lifecycle. The
HTTP layer and the CLI tools only talk to this class.

Components:
    stores      -> legacy and target RecordStore drivers
    outbox      -> OutboxStore (control database), producer, worker
    conflicts   -> ConflictLedger (control database), resolver
    routing     -> ModeRouter with a ShadowComparator
    cache       -> ReadCache over a CacheConnectionManager
    reconcile   -> ParityChecker

Invariants:
    - Mode configuration is resolved once, at construction
    - Every mutation goes through the router and then invalidates the
      scopes of its mutation kind for every affected user
    - close() cancels shadow comparisons before closing the stores

How to change safely:
    - Construct components in dependency order in start()
    - Keep close() tolerant of a partially started service
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Iterable, Mapping
from pathlib import Path
from typing import Any
from urllib.parse import parse_qsl

from .alerts import AlertSink, LoggingAlertSink
from .cache import (
    CacheBackend,
    CacheConnectionManager,
    CacheResult,
    InMemoryCacheBackend,
    MutationKind,
    ReadCache,
    RedisCacheBackend,
    scopes_for,
    ttl_for,
)
from .config import ServerConfig, StoreDriver, StoreRole
from .conflicts import ConflictLedger, ConflictResolver
from .outbox import DrainResult, OutboxProducer, OutboxStore, OutboxWorker
from .reconcile import ParityChecker
from .routing import ModeRouter, ReadDescriptor, ShadowComparator, WriteDescriptor, WriteResult
from .stores import StorePair, create_record_store

logger = logging.getLogger(__name__)


class DualStoreService:
    """Owns the migration components.

    Example:
        >>> service = DualStoreService(ServerConfig.from_env())
        >>> await service.start()
        >>> await service.mutate(WriteDescriptor.upsert("expenses", "e1", body), "expense", ["u1"])
        >>> await service.close()
    """

    def __init__(
        self,
        config: ServerConfig | None = None,
        stores: StorePair | None = None,
        cache_backend_factory: Callable[[], CacheBackend] | None = None,
        alert_sink: AlertSink | None = None,
    ) -> None:
        """Initialize the service.

        Args:
            config: Server configuration (loaded from env if not provided)
            stores: Store drivers; built from config.storage when omitted
            cache_backend_factory: Builds the cache backend; Redis when
                REDIS_URL is set, in-memory otherwise
            alert_sink: Receives operator alerts
        """
        self.config = config or ServerConfig.from_env()
        self.modes = self.config.modes
        self.alert_sink = alert_sink or LoggingAlertSink()
        self._stores = stores
        self._cache_backend_factory = cache_backend_factory or self._default_cache_factory
        self._started = False

        self.outbox: OutboxStore | None = None
        self.producer: OutboxProducer | None = None
        self.worker: OutboxWorker | None = None
        self.ledger: ConflictLedger | None = None
        self.resolver: ConflictResolver | None = None
        self.comparator: ShadowComparator | None = None
        self.router: ModeRouter | None = None
        self.cache_connection: CacheConnectionManager | None = None
        self.cache: ReadCache | None = None
        self.parity: ParityChecker | None = None

    def _default_cache_factory(self) -> CacheBackend:
        if self.config.cache.redis_url:
            return RedisCacheBackend.from_url(
                self.config.cache.redis_url,
                connect_timeout_seconds=self.config.cache.connect_timeout_seconds,
            )
        return InMemoryCacheBackend()

    @property
    def stores(self) -> StorePair:
        if self._stores is None:
            raise RuntimeError("DualStoreService not started")
        return self._stores

    @property
    def is_started(self) -> bool:
        return self._started

    async def start(self) -> None:
        """Build and connect every component."""
        if self._started:
            logger.warning("DualStoreService already started")
            return

        self.config.log_config()
        storage = self.config.storage
        data_dir = Path(storage.data_dir)
        data_dir.mkdir(parents=True, exist_ok=True)

        if self._stores is None:
            self._stores = StorePair(
                legacy=create_record_store(storage, StoreRole.LEGACY),
                target=create_record_store(storage, StoreRole.TARGET),
            )

        control_db = str(data_dir / storage.control_db_name)
        self.outbox = OutboxStore(
            control_db, wal_mode=storage.wal_mode, busy_timeout_ms=storage.busy_timeout_ms
        )
        self.ledger = ConflictLedger(
            control_db, wal_mode=storage.wal_mode, busy_timeout_ms=storage.busy_timeout_ms
        )

        self.producer = OutboxProducer(self.outbox, max_retries=self.config.outbox.max_retries)
        self.worker = OutboxWorker(
            self.outbox,
            self._stores.by_role(),
            config=self.config.outbox,
            alert_sink=self.alert_sink,
        )
        self.comparator = ShadowComparator(self.ledger, self.config.shadow)
        self.router = ModeRouter(
            self.modes,
            self._stores,
            self.producer,
            comparator=self.comparator,
            alert_sink=self.alert_sink,
        )
        self.resolver = ConflictResolver(
            self.ledger,
            self._stores,
            self.modes,
            self.producer,
            alert_sink=self.alert_sink,
        )
        self.parity = ParityChecker(self._stores, self.modes, ledger=self.ledger, producer=self.producer)

        self.cache_connection = CacheConnectionManager(self.config.cache, self._cache_backend_factory)
        self.cache = ReadCache(self.cache_connection, self.config.cache)

        self._started = True
        logger.info(
            "DualStoreService started",
            extra={
                "backend_mode": self.modes.backend_mode.value,
                "write_mode": self.modes.write_mode.value,
                "store_driver": storage.driver.value,
            },
        )
        if storage.driver is StoreDriver.MEMORY:
            logger.warning("Using in-memory record stores; data is lost on restart")

    async def close(self) -> None:
        """Stop background work and release resources."""
        if self.comparator is not None:
            await self.comparator.cancel_all()
        if self.cache_connection is not None:
            await self.cache_connection.close()
        if self._stores is not None and self._started:
            await self._stores.close()
        self._started = False
        logger.info("DualStoreService stopped")

    async def __aenter__(self) -> DualStoreService:
        await self.start()
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.close()

    async def mutate(
        self,
        descriptor: WriteDescriptor,
        kind: MutationKind | str,
        affected_user_ids: Iterable[str],
    ) -> WriteResult:
        """Route a write and invalidate the cache scopes it affects.

        Args:
            descriptor: The write
            kind: Mutation kind selecting the scopes to invalidate
            affected_user_ids: Users whose cached reads may change

        Raises:
            ValidationError: If the mutation kind or payload is invalid
            StoreError: If the primary write failed
        """
        scopes = scopes_for(kind)
        result = await self.router.write(descriptor)  # type: ignore[union-attr]
        await self.cache.invalidate_users_cache(affected_user_ids, scopes)  # type: ignore[union-attr]
        return result

    async def cached_read(
        self,
        descriptor: ReadDescriptor,
        scope: str,
        user_id: str,
        query: Mapping[str, Any] | str | None = None,
    ) -> CacheResult[Any]:
        """Read through the cache.

        The cache key covers the scope, the user, the descriptor and any
        extra request parameters.
        """
        params: dict[str, Any] = {"table": descriptor.table}
        if descriptor.record_id is not None:
            params["id"] = descriptor.record_id
        if descriptor.limit is not None:
            params["limit"] = descriptor.limit
        for name, value in (descriptor.filters or {}).items():
            params[f"f.{name}"] = value
        if isinstance(query, str):
            extra: dict[str, Any] = dict(parse_qsl(query.lstrip("?"), keep_blank_values=True))
        else:
            extra = dict(query or {})
        key = self.cache.key_for(scope, user_id, {**extra, **params})  # type: ignore[union-attr]

        return await self.cache.get_or_set_json_with_meta(  # type: ignore[union-attr]
            key,
            ttl_for(scope),
            lambda: self.router.read(descriptor),  # type: ignore[union-attr]
        )

    async def flush(self, limit: int) -> DrainResult:
        """Drain up to `limit` outbox entries."""
        return await self.worker.drain(limit)  # type: ignore[union-attr]

    async def health(self) -> dict[str, Any]:
        """Mode, cache breaker state and outbox/conflict counts."""
        return {
            "status": "ok" if self._started else "stopped",
            "backend_mode": self.modes.backend_mode.value,
            "write_mode": self.modes.write_mode.value,
            "primary_store": self.modes.primary_role.value,
            "cache": self.cache_connection.state if self.cache_connection else "idle",
            "outbox": await self.outbox.count_by_status() if self.outbox else {},
            "open_conflicts": await self.ledger.count_open() if self.ledger else 0,
        }

