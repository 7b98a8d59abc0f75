"""
Read and write descriptors passed through the router.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any

from ..outbox.models import OutboxOperation


@dataclass(frozen=True)
class ReadDescriptor:
    """What to read.

    A descriptor with a record_id is a point read; without one it is a
    filtered query over the table, ordered by record id.
    """

    table: str
    record_id: str | None = None
    filters: dict[str, Any] | None = None
    limit: int | None = None

    @property
    def is_point_read(self) -> bool:
        return self.record_id is not None

    def describe(self) -> str:
        if self.is_point_read:
            return f"{self.table}/{self.record_id}"
        return f"{self.table}?{self.filters or {}}"


@dataclass(frozen=True)
class WriteDescriptor:
    """One logical write against a single record.

    Attributes:
        operation: upsert or delete
        table: Store table name
        record_id: Record identifier
        payload: Record body for upserts
        write_version: Version of the logical write used for the mirror's
            idempotency key. Callers that retry a write pass the same value
            to collapse the retries onto one outbox entry.
    """

    operation: OutboxOperation
    table: str
    record_id: str
    payload: dict[str, Any] | None = None
    write_version: str | None = None

    @classmethod
    def upsert(
        cls,
        table: str,
        record_id: str,
        payload: dict[str, Any],
        write_version: str | None = None,
    ) -> WriteDescriptor:
        return cls(OutboxOperation.UPSERT, table, record_id, payload, write_version)

    @classmethod
    def delete(cls, table: str, record_id: str, write_version: str | None = None) -> WriteDescriptor:
        return cls(OutboxOperation.DELETE, table, record_id, None, write_version)


@dataclass
class WriteResult:
    """Outcome of a routed write.

    Attributes:
        record_id: Record identifier
        changed: Whether the primary store's content changed
        mirrored: Whether a mirror entry is queued for the secondary store
        idempotency_key: Key of the queued mirror entry
        mirror_gap: True when the primary committed but the mirror could
            not be enqueued
    """

    record_id: str
    changed: bool
    mirrored: bool = False
    idempotency_key: str | None = None
    mirror_gap: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {
            "record_id": self.record_id,
            "changed": self.changed,
            "mirrored": self.mirrored,
            "idempotency_key": self.idempotency_key,
            "mirror_gap": self.mirror_gap,
        }
