"""
Outbox producer.

Turns a committed primary-store change into an OutboxEntry describing the
equivalent secondary-store change, keyed for idempotent retry.
"""

from __future__ import annotations

import logging
from typing import Any

from ..config import StoreRole
from ..stores.base import content_hash, normalize_record
from .models import OutboxEntry, OutboxOperation, derive_idempotency_key
from .store import OutboxStore

logger = logging.getLogger(__name__)


def default_write_version(operation: OutboxOperation, payload: dict[str, Any] | None) -> str:
    """Content version of a write when the caller supplies none."""
    if operation is OutboxOperation.DELETE:
        return "delete"
    return content_hash(payload)


class OutboxProducer:
    """Records mirror intents in the outbox.

    Example:
        >>> producer = OutboxProducer(outbox)
        >>> entry = await producer.enqueue_mirror(
        ...     OutboxOperation.UPSERT, "expenses", "e1", {"amount": 5}, StoreRole.TARGET
        ... )
    """

    def __init__(self, outbox: OutboxStore, max_retries: int = 10) -> None:
        self.outbox = outbox
        self.max_retries = max_retries

    async def enqueue_mirror(
        self,
        operation: OutboxOperation,
        table: str,
        record_id: str,
        payload: dict[str, Any] | None,
        destination: StoreRole,
        write_version: str | None = None,
    ) -> OutboxEntry:
        """Enqueue one mirror entry.

        Args:
            operation: upsert or delete
            table: Store table name
            record_id: Record identifier
            payload: Snapshot to upsert (ignored for deletes)
            destination: Store the mirror is applied to
            write_version: Version of the logical write; defaults to the
                payload content hash

        Returns:
            The stored entry (the existing one if the key was already queued)

        Raises:
            StoreError: If the outbox could not record the entry
        """
        snapshot = None
        if operation is OutboxOperation.UPSERT:
            snapshot = normalize_record(record_id, payload or {})
        version = write_version or default_write_version(operation, snapshot)

        entry = OutboxEntry(
            idempotency_key=derive_idempotency_key(operation, table, record_id, version),
            operation=operation,
            table=table,
            record_id=record_id,
            destination=destination,
            payload=snapshot,
            max_retries=self.max_retries,
        )
        stored, created = await self.outbox.enqueue(entry)

        logger.debug(
            "Enqueued mirror entry" if created else "Mirror entry already queued",
            extra={
                "idempotency_key": stored.idempotency_key,
                "table": table,
                "record_id": record_id,
                "destination": destination.value,
                "status": stored.status.value,
            },
        )
        return stored
