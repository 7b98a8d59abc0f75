"""
Outbox data model.

An OutboxEntry records the intent to mirror one committed primary-store
change onto the secondary store.

State machine:
    PENDING -> PROCESSING -> DONE
                          -> PENDING (retry, retries + 1, later next_retry_at)
                          -> FAILED  (retries == max_retries, or terminal error)
    FAILED  -> PENDING (operator requeue)
"""

from __future__ import annotations

import hashlib
import json
import time
from dataclasses import dataclass
from enum import Enum
from typing import Any

from ..config import StoreRole
from ..errors import ValidationError
from ..stores.base import canonical_json


def now_ms() -> int:
    """Current wall-clock time in Unix milliseconds."""
    return int(time.time() * 1000)


class OutboxOperation(Enum):
    UPSERT = "upsert"
    DELETE = "delete"

    @classmethod
    def parse(cls, value: Any) -> OutboxOperation:
        """Parse an operation name.

        Raises:
            ValidationError: If the value is not a known operation
        """
        if isinstance(value, cls):
            return value
        try:
            return cls(str(value).lower())
        except ValueError:
            raise ValidationError(
                f"Unknown outbox operation: {value!r}", field_name="operation", value=value
            )


class OutboxStatus(Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    DONE = "done"
    FAILED = "failed"


def derive_idempotency_key(
    operation: OutboxOperation,
    table: str,
    record_id: str,
    write_version: str,
) -> str:
    """Deterministic key for one logical write.

    The same (operation, table, record_id, write_version) always yields the
    same key, so repeated enqueue attempts collapse onto one outbox row.
    """
    seed = canonical_json(
        {
            "operation": operation.value,
            "table": table,
            "recordId": record_id,
            "writeVersion": write_version,
        }
    )
    return hashlib.sha1(seed.encode("utf-8")).hexdigest()


@dataclass
class OutboxEntry:
    """A pending cross-store operation.

    Attributes:
        idempotency_key: Unique key of the logical write
        operation: upsert or delete
        table: Store table name
        record_id: Record identifier
        destination: Store the mirror is applied to
        payload: Snapshot to upsert (None for deletes)
        status: Lifecycle state
        retries: Failed attempts so far
        max_retries: Attempts before the entry is marked failed
        last_error: Message of the most recent failure
        next_retry_at: Earliest time the entry may be drained (Unix ms)
        claimed_at: Start of the current processing lease (Unix ms)
        created_at: Creation time (Unix ms)
        updated_at: Last state change (Unix ms)
    """

    idempotency_key: str
    operation: OutboxOperation
    table: str
    record_id: str
    destination: StoreRole
    payload: dict[str, Any] | None = None
    status: OutboxStatus = OutboxStatus.PENDING
    retries: int = 0
    max_retries: int = 10
    last_error: str | None = None
    next_retry_at: int = 0
    claimed_at: int | None = None
    created_at: int = 0
    updated_at: int = 0

    @property
    def is_terminal(self) -> bool:
        return self.status in (OutboxStatus.DONE, OutboxStatus.FAILED)

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for serialization."""
        return {
            "idempotency_key": self.idempotency_key,
            "operation": self.operation.value,
            "table": self.table,
            "record_id": self.record_id,
            "destination": self.destination.value,
            "payload": self.payload,
            "status": self.status.value,
            "retries": self.retries,
            "max_retries": self.max_retries,
            "last_error": self.last_error,
            "next_retry_at": self.next_retry_at,
            "claimed_at": self.claimed_at,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
        }

    @classmethod
    def from_row(cls, row: Any) -> OutboxEntry:
        """Create from a sqlite3.Row of the outbox table."""
        payload_json = row["payload_json"]
        return cls(
            idempotency_key=row["idempotency_key"],
            operation=OutboxOperation(row["operation"]),
            table=row["table_name"],
            record_id=row["record_id"],
            destination=StoreRole(row["destination"]),
            payload=json.loads(payload_json) if payload_json is not None else None,
            status=OutboxStatus(row["status"]),
            retries=row["retries"],
            max_retries=row["max_retries"],
            last_error=row["last_error"],
            next_retry_at=row["next_retry_at"],
            claimed_at=row["claimed_at"],
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )

    def __str__(self) -> str:
        return (
            f"OutboxEntry({self.operation.value} {self.table}/{self.record_id} "
            f"-> {self.destination.value}, {self.status.value})"
        )


@dataclass
class DrainResult:
    """Outcome of one drain() call.

    Attributes:
        drained: Entries claimed and attempted
        succeeded: Entries applied and marked done
        failed: Attempts that did not succeed (retried + dead_lettered)
        retried: Entries returned to pending with a later next_retry_at
        dead_lettered: Entries moved to the terminal failed state
        skipped: Entries another caller claimed first
    """

    drained: int = 0
    succeeded: int = 0
    failed: int = 0
    retried: int = 0
    dead_lettered: int = 0
    skipped: int = 0

    def to_dict(self) -> dict[str, int]:
        return {
            "drained": self.drained,
            "succeeded": self.succeeded,
            "failed": self.failed,
            "retried": self.retried,
            "dead_lettered": self.dead_lettered,
            "skipped": self.skipped,
        }
