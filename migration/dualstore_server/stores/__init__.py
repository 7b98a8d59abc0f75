"""
Record store drivers for DualStore.

This module provides the pluggable store interface for both sides of the
migration:
- SQLite (one database file per store)
- In-memory (for testing)

Invariants:
    - upsert/delete are idempotent and content-keyed
    - Drivers raise TransientStoreError or TerminalStoreError only
"""

from __future__ import annotations

from pathlib import Path
from typing import TYPE_CHECKING

from .base import RecordStore, canonical_json, content_hash
from .memory import InMemoryRecordStore
from .pair import StorePair
from .sqlite import SqliteRecordStore

if TYPE_CHECKING:
    from ..config import StorageConfig, StoreRole


def create_record_store(config: "StorageConfig", role: "StoreRole") -> RecordStore:
    """Factory function to create the store for one migration side.

    Args:
        config: Storage configuration
        role: Which side of the migration the store serves

    Returns:
        Appropriate RecordStore implementation

    Raises:
        ValueError: If driver is not supported
    """
    from ..config import StoreDriver, StoreRole

    if config.driver is StoreDriver.MEMORY:
        return InMemoryRecordStore(name=role.value)
    elif config.driver is StoreDriver.SQLITE:
        db_name = config.legacy_db_name if role is StoreRole.LEGACY else config.target_db_name
        return SqliteRecordStore(
            str(Path(config.data_dir) / db_name),
            name=role.value,
            wal_mode=config.wal_mode,
            busy_timeout_ms=config.busy_timeout_ms,
        )
    else:
        raise ValueError(f"Unsupported store driver: {config.driver}")


__all__ = [
    "RecordStore",
    "InMemoryRecordStore",
    "SqliteRecordStore",
    "StorePair",
    "canonical_json",
    "content_hash",
    "create_record_store",
]
