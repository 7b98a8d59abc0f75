"""
Configuration management for DualStore Server.

All configuration is done via environment variables - no config files inside containers.
This module provides typed configuration classes with validation, and the
mode resolvers that decide which store is authoritative.

Invariants:
    - All settings have sensible defaults for local development
    - BACKEND_MODE / WRITE_MODE fail closed to their defaults; an unknown
      value is logged as a ConfigError and never becomes a third state
    - Mode configuration is resolved once per process and is immutable
    - Secrets are never logged or exposed in error messages

How to change safely:
    - Add new settings with defaults that maintain backward compatibility
    - Never widen BackendMode/WriteMode without updating ModeRouter
    - Document all new settings in DESIGN.md
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from enum import Enum

from .errors import ConfigError

logger = logging.getLogger(__name__)


class BackendMode(Enum):
    """Which store serves reads."""

    LEGACY = "legacy"
    SHADOW = "shadow"
    TARGET = "target"


class WriteMode(Enum):
    """Whether writes are mirrored to the secondary store."""

    SINGLE = "single"
    DUAL = "dual"


class StoreRole(Enum):
    """The two physical stores taking part in the migration."""

    LEGACY = "legacy"
    TARGET = "target"

    @property
    def other(self) -> StoreRole:
        return StoreRole.TARGET if self is StoreRole.LEGACY else StoreRole.LEGACY


class StoreDriver(Enum):
    """Supported record store drivers."""

    SQLITE = "sqlite"
    MEMORY = "memory"


DEFAULT_BACKEND_MODE = BackendMode.LEGACY
DEFAULT_WRITE_MODE = WriteMode.SINGLE


def _resolve(enum_cls: type[Enum], setting: str, value: str | None, default: Enum) -> Enum:
    if value is None or not value.strip():
        return default

    normalized = value.strip().lower()
    try:
        return enum_cls(normalized)
    except ValueError:
        allowed = ", ".join(member.value for member in enum_cls)
        error = ConfigError(
            f"Invalid {setting} '{value}'. Must be one of: {allowed}. "
            f"Falling back to '{default.value}'",
            setting=setting,
            value=value,
        )
        logger.error(str(error), extra={"code": error.code, **error.details})
        return default


def resolve_backend_mode(value: str | None) -> BackendMode:
    """Parse a BACKEND_MODE value.

    Args:
        value: Raw setting value (may be None)

    Returns:
        The matching BackendMode, or LEGACY when missing or unrecognized.
    """
    return _resolve(BackendMode, "BACKEND_MODE", value, DEFAULT_BACKEND_MODE)  # type: ignore[return-value]


def resolve_write_mode(value: str | None) -> WriteMode:
    """Parse a WRITE_MODE value.

    Args:
        value: Raw setting value (may be None)

    Returns:
        The matching WriteMode, or SINGLE when missing or unrecognized.
    """
    return _resolve(WriteMode, "WRITE_MODE", value, DEFAULT_WRITE_MODE)  # type: ignore[return-value]


@dataclass(frozen=True)
class ModeConfig:
    """Backend and write mode for this process.

    Attributes:
        backend_mode: Which store serves reads
        write_mode: Whether writes are mirrored through the outbox
    """

    backend_mode: BackendMode = DEFAULT_BACKEND_MODE
    write_mode: WriteMode = DEFAULT_WRITE_MODE

    @property
    def primary_role(self) -> StoreRole:
        """Store that receives synchronous writes and authoritative reads."""
        if self.backend_mode is BackendMode.TARGET:
            return StoreRole.TARGET
        return StoreRole.LEGACY

    @property
    def secondary_role(self) -> StoreRole:
        """Store that receives mirrored writes."""
        return self.primary_role.other

    @property
    def is_dual_write(self) -> bool:
        return self.write_mode is WriteMode.DUAL

    @property
    def is_shadow_read(self) -> bool:
        return self.backend_mode is BackendMode.SHADOW

    @classmethod
    def from_env(cls) -> ModeConfig:
        """Load configuration from environment variables."""
        return cls(
            backend_mode=resolve_backend_mode(os.getenv("BACKEND_MODE")),
            write_mode=resolve_write_mode(os.getenv("WRITE_MODE")),
        )


@dataclass(frozen=True)
class StorageConfig:
    """Local storage configuration.

    Attributes:
        driver: Record store driver for both stores
        data_dir: Directory for SQLite databases
        legacy_db_name: File name of the legacy store database
        target_db_name: File name of the target store database
        control_db_name: File name of the outbox/conflict database
        wal_mode: SQLite WAL mode enabled
        busy_timeout_ms: SQLite busy timeout in milliseconds
    """

    driver: StoreDriver = StoreDriver.SQLITE
    data_dir: str = "/var/lib/dualstore"
    legacy_db_name: str = "legacy.db"
    target_db_name: str = "target.db"
    control_db_name: str = "control.db"
    wal_mode: bool = True
    busy_timeout_ms: int = 5000

    @classmethod
    def from_env(cls) -> StorageConfig:
        """Load configuration from environment variables."""
        driver_str = os.getenv("STORE_DRIVER", "sqlite").lower()
        try:
            driver = StoreDriver(driver_str)
        except ValueError:
            raise ValueError(f"Invalid STORE_DRIVER '{driver_str}'. Must be one of: sqlite, memory")

        return cls(
            driver=driver,
            data_dir=os.getenv("DATA_DIR", "/var/lib/dualstore"),
            legacy_db_name=os.getenv("LEGACY_DB_NAME", "legacy.db"),
            target_db_name=os.getenv("TARGET_DB_NAME", "target.db"),
            control_db_name=os.getenv("CONTROL_DB_NAME", "control.db"),
            wal_mode=os.getenv("SQLITE_WAL_MODE", "true").lower() == "true",
            busy_timeout_ms=int(os.getenv("SQLITE_BUSY_TIMEOUT_MS", "5000")),
        )


@dataclass(frozen=True)
class OutboxConfig:
    """Outbox producer/worker configuration.

    Attributes:
        max_retries: Attempts before an entry is marked failed
        backoff_base_ms: First retry delay
        backoff_cap_ms: Maximum retry delay
        lease_timeout_ms: Age after which a processing entry may be re-claimed
        apply_timeout_ms: Bound on a single destination-store call
        default_flush_limit: Entries drained per flush when no limit is given
        max_flush_limit: Upper clamp for the flush limit
    """

    max_retries: int = 10
    backoff_base_ms: int = 5000
    backoff_cap_ms: int = 5 * 60 * 1000
    lease_timeout_ms: int = 60_000
    apply_timeout_ms: int = 10_000
    default_flush_limit: int = 100
    max_flush_limit: int = 500

    @classmethod
    def from_env(cls) -> OutboxConfig:
        """Load configuration from environment variables."""
        return cls(
            max_retries=int(os.getenv("OUTBOX_MAX_RETRIES", "10")),
            backoff_base_ms=int(os.getenv("OUTBOX_BACKOFF_BASE_MS", "5000")),
            backoff_cap_ms=int(os.getenv("OUTBOX_BACKOFF_CAP_MS", str(5 * 60 * 1000))),
            lease_timeout_ms=int(os.getenv("OUTBOX_LEASE_TIMEOUT_MS", "60000")),
            apply_timeout_ms=int(os.getenv("OUTBOX_APPLY_TIMEOUT_MS", "10000")),
            default_flush_limit=int(os.getenv("OUTBOX_DEFAULT_FLUSH_LIMIT", "100")),
            max_flush_limit=int(os.getenv("OUTBOX_MAX_FLUSH_LIMIT", "500")),
        )


@dataclass(frozen=True)
class ShadowConfig:
    """Shadow-read comparison configuration.

    Attributes:
        compare_timeout_ms: Bound on the background target-store read
        max_in_flight: Comparisons allowed at once; extra ones are dropped
        error_queue_size: Capacity of the comparison error channel
    """

    compare_timeout_ms: int = 5000
    max_in_flight: int = 100
    error_queue_size: int = 100

    @classmethod
    def from_env(cls) -> ShadowConfig:
        """Load configuration from environment variables."""
        return cls(
            compare_timeout_ms=int(os.getenv("SHADOW_COMPARE_TIMEOUT_MS", "5000")),
            max_in_flight=int(os.getenv("SHADOW_MAX_IN_FLIGHT", "100")),
            error_queue_size=int(os.getenv("SHADOW_ERROR_QUEUE_SIZE", "100")),
        )


@dataclass(frozen=True)
class CacheConfig:
    """Read cache configuration.

    Attributes:
        redis_url: Redis connection URL (None = in-process memory backend)
        key_prefix: Prefix for every cache and registry key
        retry_after_ms: Circuit-breaker cooldown after a backend failure
        connect_timeout_seconds: Redis socket connect timeout
        registry_grace_seconds: Extra lifetime of a scope index over its entries
    """

    redis_url: str | None = None
    key_prefix: str = "dualstore:v1"
    retry_after_ms: int = 60_000
    connect_timeout_seconds: float = 5.0
    registry_grace_seconds: int = 60

    @classmethod
    def from_env(cls) -> CacheConfig:
        """Load configuration from environment variables."""
        return cls(
            redis_url=os.getenv("REDIS_URL"),
            key_prefix=os.getenv("CACHE_PREFIX", "dualstore:v1"),
            retry_after_ms=int(os.getenv("CACHE_RETRY_AFTER_MS", "60000")),
            connect_timeout_seconds=float(os.getenv("CACHE_CONNECT_TIMEOUT", "5.0")),
            registry_grace_seconds=int(os.getenv("CACHE_REGISTRY_GRACE_SECONDS", "60")),
        )


@dataclass(frozen=True)
class ObservabilityConfig:
    """Observability and logging configuration.

    Attributes:
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR)
        log_format: Log format (json, text)
    """

    log_level: str = "INFO"
    log_format: str = "json"

    @classmethod
    def from_env(cls) -> ObservabilityConfig:
        """Load configuration from environment variables."""
        return cls(
            log_level=os.getenv("LOG_LEVEL", "INFO"),
            log_format=os.getenv("LOG_FORMAT", "json"),
        )


@dataclass
class ServerConfig:
    """Complete server configuration.

    This aggregates all configuration sections and provides validation.

    Attributes:
        modes: Backend/write mode
        storage: Record store configuration
        outbox: Outbox configuration
        shadow: Shadow comparison configuration
        cache: Read cache configuration
        observability: Observability configuration
    """

    modes: ModeConfig = field(default_factory=ModeConfig)
    storage: StorageConfig = field(default_factory=StorageConfig)
    outbox: OutboxConfig = field(default_factory=OutboxConfig)
    shadow: ShadowConfig = field(default_factory=ShadowConfig)
    cache: CacheConfig = field(default_factory=CacheConfig)
    observability: ObservabilityConfig = field(default_factory=ObservabilityConfig)

    @classmethod
    def from_env(cls) -> ServerConfig:
        """Load complete configuration from environment variables.

        Returns:
            ServerConfig with all sections populated from environment.

        Raises:
            ValueError: If required configuration is missing or invalid.
        """
        config = cls(
            modes=ModeConfig.from_env(),
            storage=StorageConfig.from_env(),
            outbox=OutboxConfig.from_env(),
            shadow=ShadowConfig.from_env(),
            cache=CacheConfig.from_env(),
            observability=ObservabilityConfig.from_env(),
        )

        config.validate()
        return config

    def validate(self) -> None:
        """Validate configuration consistency.

        Raises:
            ValueError: If configuration is invalid.
        """
        if self.outbox.max_retries < 1:
            raise ValueError("OUTBOX_MAX_RETRIES must be at least 1")
        if self.outbox.backoff_base_ms <= 0 or self.outbox.backoff_cap_ms < self.outbox.backoff_base_ms:
            raise ValueError("OUTBOX_BACKOFF_CAP_MS must be >= OUTBOX_BACKOFF_BASE_MS > 0")
        if not 1 <= self.outbox.default_flush_limit <= self.outbox.max_flush_limit:
            raise ValueError("OUTBOX_DEFAULT_FLUSH_LIMIT must be within [1, OUTBOX_MAX_FLUSH_LIMIT]")
        if self.shadow.error_queue_size < 1:
            raise ValueError("SHADOW_ERROR_QUEUE_SIZE must be at least 1")

        if self.storage.driver is StoreDriver.SQLITE and not os.path.exists(self.storage.data_dir):
            logger.warning(
                f"Data directory does not exist: {self.storage.data_dir}. "
                "It will be created on first write."
            )

    def log_config(self) -> None:
        """Log configuration (redacting secrets)."""
        logger.info(
            "Server configuration loaded",
            extra={
                "backend_mode": self.modes.backend_mode.value,
                "write_mode": self.modes.write_mode.value,
                "primary_store": self.modes.primary_role.value,
                "store_driver": self.storage.driver.value,
                "data_dir": self.storage.data_dir,
                "outbox_max_retries": self.outbox.max_retries,
                "cache_backend": "redis" if self.cache.redis_url else "memory",
                "log_level": self.observability.log_level,
            },
        )
