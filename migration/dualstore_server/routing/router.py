"""
Read/write router.

Decides which store serves a read and which store receives a write, based
on the process-wide ModeConfig.

Read routing:
    legacy -> legacy store
    target -> target store
    shadow -> legacy store, plus a background comparison against target

Write routing:
    Always a synchronous write to the primary store. In dual write mode a
    committed primary write is followed by exactly one outbox entry that
    mirrors it onto the secondary store. Without an explicit write_version,
    a write that changed the primary gets a fresh version and a no-op write
    uses the content version, so retried no-op writes share one entry.

Invariants:
    - A primary write failure propagates unchanged; nothing is enqueued
    - An enqueue failure never rolls back the primary write; it is logged,
      alerted as a durability gap and reported via WriteResult.mirror_gap
    - Shadow comparison never affects the caller's result or latency
"""

from __future__ import annotations

import copy
import logging
import uuid
from typing import Any

from ..alerts import OUTBOX_ENQUEUE_GAP, AlertSink, LoggingAlertSink
from ..config import ModeConfig
from ..outbox.models import OutboxOperation
from ..outbox.producer import OutboxProducer
from ..stores.base import RecordStore, normalize_record
from ..stores.pair import StorePair
from .models import ReadDescriptor, WriteDescriptor, WriteResult
from .shadow import ShadowComparator

logger = logging.getLogger(__name__)


async def _read(store: RecordStore, descriptor: ReadDescriptor) -> Any:
    if descriptor.is_point_read:
        return await store.get(descriptor.table, descriptor.record_id)  # type: ignore[arg-type]
    return await store.query(descriptor.table, descriptor.filters, descriptor.limit)


class ModeRouter:
    """Routes reads and writes between the legacy and target stores.

    Example:
        >>> router = ModeRouter(modes, stores, producer, comparator)
        >>> record = await router.read(ReadDescriptor("expenses", record_id="e1"))
        >>> result = await router.write(WriteDescriptor.upsert("expenses", "e1", {"amount": 5}))
    """

    def __init__(
        self,
        modes: ModeConfig,
        stores: StorePair,
        producer: OutboxProducer,
        comparator: ShadowComparator | None = None,
        alert_sink: AlertSink | None = None,
    ) -> None:
        self.modes = modes
        self.stores = stores
        self.producer = producer
        self.comparator = comparator
        self.alert_sink = alert_sink or LoggingAlertSink()

    async def read(self, descriptor: ReadDescriptor) -> Any:
        """Read from the primary store.

        Returns:
            The record (or None) for point reads, a list for queries
        """
        result = await _read(self.stores.primary(self.modes), descriptor)

        if self.modes.is_shadow_read and self.comparator is not None:
            self.comparator.schedule(
                descriptor,
                copy.deepcopy(result),
                self.stores.secondary(self.modes),
            )

        return result

    async def write(self, descriptor: WriteDescriptor) -> WriteResult:
        """Write to the primary store and mirror it when dual writing.

        Raises:
            ValidationError: If the payload is not an object
            StoreError: If the primary write failed
        """
        operation = OutboxOperation.parse(descriptor.operation)
        primary = self.stores.primary(self.modes)

        if operation is OutboxOperation.UPSERT:
            payload = normalize_record(descriptor.record_id, descriptor.payload)  # type: ignore[arg-type]
            changed = await primary.upsert(descriptor.table, descriptor.record_id, payload)
        else:
            payload = None
            changed = await primary.delete(descriptor.table, descriptor.record_id)

        result = WriteResult(record_id=descriptor.record_id, changed=changed)
        if not self.modes.is_dual_write:
            return result

        write_version = descriptor.write_version
        if write_version is None and changed:
            # A content-only version would collide with an earlier mirror of
            # the same content, e.g. re-creating a record after a delete.
            write_version = uuid.uuid4().hex

        try:
            entry = await self.producer.enqueue_mirror(
                operation,
                descriptor.table,
                descriptor.record_id,
                payload,
                destination=self.modes.secondary_role,
                write_version=write_version,
            )
        except Exception as e:
            result.mirror_gap = True
            details = {
                "operation": operation.value,
                "table": descriptor.table,
                "record_id": descriptor.record_id,
                "destination": self.modes.secondary_role.value,
                "error": str(e),
            }
            logger.error(f"Mirror enqueue failed after primary commit: {e}", extra=details)
            await self.alert_sink.alert(OUTBOX_ENQUEUE_GAP, details)
            return result

        result.mirrored = True
        result.idempotency_key = entry.idempotency_key
        return result
