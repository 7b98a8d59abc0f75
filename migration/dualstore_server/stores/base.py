"""
Base protocol and helpers for record stores.

Both sides of the migration (legacy and target) are reached through the
RecordStore protocol. The router, outbox worker, conflict resolver and
parity checker only ever talk to this interface.

Invariants:
    - upsert() is content-keyed last-write-wins by record_id: writing an
      identical payload is a no-op and reports no change
    - delete() of an absent record succeeds and reports no change
    - Stored records always carry their record_id under the "id" key
    - Drivers raise only TransientStoreError or TerminalStoreError

How to change safely:
    - Protocol changes require updating all implementations
    - Keep upsert/delete idempotent; the outbox relies on it for retries
"""

from __future__ import annotations

import hashlib
import json
import re
from abc import abstractmethod
from typing import Any, Protocol, runtime_checkable

from ..errors import ValidationError

_FIELD_NAME = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")


def canonical_json(value: Any) -> str:
    """Serialize a value deterministically (sorted keys, compact)."""
    return json.dumps(value, sort_keys=True, separators=(",", ":"), default=str)


def content_hash(value: Any) -> str:
    """Content fingerprint used for last-write-wins comparison."""
    return hashlib.sha1(canonical_json(value).encode("utf-8")).hexdigest()


def normalize_record(record_id: str, payload: dict[str, Any]) -> dict[str, Any]:
    """Return the stored form of a payload.

    Raises:
        ValidationError: If the payload is not a JSON object
    """
    if not isinstance(payload, dict):
        raise ValidationError(
            f"Record payload must be an object, got {type(payload).__name__}",
            field_name="payload",
        )
    record = dict(payload)
    record["id"] = record_id
    return record


def check_filter_fields(filters: dict[str, Any] | None) -> dict[str, Any]:
    """Validate filter field names.

    Raises:
        ValidationError: If a field name is not a plain identifier
    """
    filters = filters or {}
    for name in filters:
        if not _FIELD_NAME.match(name):
            raise ValidationError(f"Invalid filter field: {name!r}", field_name=name)
    return filters


@runtime_checkable
class RecordStore(Protocol):
    """Protocol for record store drivers.

    Durability contract:
        - upsert()/delete() return only after the change is committed

    Example:
        >>> store = SqliteRecordStore("/var/lib/dualstore/target.db", name="target")
        >>> changed = await store.upsert("expenses", "e1", {"amount": 12})
        >>> record = await store.get("expenses", "e1")
    """

    @property
    @abstractmethod
    def name(self) -> str:
        """Store name used in logs and errors."""
        ...

    @abstractmethod
    async def get(self, table: str, record_id: str) -> dict[str, Any] | None:
        """Fetch one record, or None if absent."""
        ...

    @abstractmethod
    async def upsert(self, table: str, record_id: str, payload: dict[str, Any]) -> bool:
        """Insert or replace a record.

        Returns:
            True if the stored content changed, False if it was identical
        """
        ...

    @abstractmethod
    async def delete(self, table: str, record_id: str) -> bool:
        """Delete a record.

        Returns:
            True if a record was removed, False if it was already absent
        """
        ...

    @abstractmethod
    async def query(
        self,
        table: str,
        filters: dict[str, Any] | None = None,
        limit: int | None = None,
    ) -> list[dict[str, Any]]:
        """Return records whose top-level fields equal every filter value.

        A None filter value matches a null or missing field. Results are
        ordered by record id.
        """
        ...

    @abstractmethod
    async def close(self) -> None:
        """Release resources."""
        ...
