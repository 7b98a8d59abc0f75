"""
Conflict resolver.

Applies an operator-chosen resolution to an open conflict and converges the
two stores for that entity.

Resolutions:
    server-wins: overwrite the secondary store with the server snapshot
    client-wins: overwrite the primary store with the client snapshot and
                 enqueue a mirror entry toward the secondary store
    merge:       field union (client wins on shared keys) written to both

Invariants:
    - The resolution value is validated before any store is touched
    - The conflict is claimed in the ledger before any store is touched, so
      concurrent resolves of one conflict never both write
    - The conflict is marked resolved only after every write succeeded;
      on any failure it stays open and the error is re-raised for retry
    - A None snapshot means the record is absent: writing it is a delete
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any

from ..alerts import CONFLICT_UNRESOLVED, AlertSink, LoggingAlertSink
from ..config import ModeConfig
from ..errors import NotFoundError
from ..outbox.models import OutboxOperation
from ..outbox.producer import OutboxProducer
from ..stores.base import RecordStore
from ..stores.pair import StorePair
from .diff import merge_snapshots
from .ledger import ConflictLedger
from .models import ConflictRecord, Resolution

logger = logging.getLogger(__name__)


@dataclass
class ResolutionOutcome:
    """Result of a successful resolve() call.

    Attributes:
        conflict: The conflict, now resolved
        snapshot: The snapshot the stores converged on (None = deleted)
    """

    conflict: ConflictRecord
    snapshot: dict[str, Any] | None


class ConflictResolver:
    """Resolves open conflicts.

    Example:
        >>> resolver = ConflictResolver(ledger, stores, modes, producer)
        >>> outcome = await resolver.resolve(conflict_id, "merge", "user:ops")
    """

    def __init__(
        self,
        ledger: ConflictLedger,
        stores: StorePair,
        modes: ModeConfig,
        producer: OutboxProducer,
        alert_sink: AlertSink | None = None,
    ) -> None:
        self.ledger = ledger
        self.stores = stores
        self.modes = modes
        self.producer = producer
        self.alert_sink = alert_sink or LoggingAlertSink()

    async def resolve(
        self,
        conflict_id: str,
        resolution: Resolution | str,
        actor_id: str,
    ) -> ResolutionOutcome:
        """Resolve an open conflict.

        Args:
            conflict_id: Conflict identifier
            resolution: server-wins, client-wins or merge
            actor_id: Actor performing the resolution

        Returns:
            ResolutionOutcome with the resolved conflict

        Raises:
            ValidationError: If the resolution is not one of the three values
            NotFoundError: If the conflict is missing, resolved, or being
                resolved by another caller
            StoreError: If a store write failed (conflict left open)
        """
        chosen = Resolution.parse(resolution)

        claimed = await self.ledger.claim(conflict_id)
        if claimed is None:
            raise NotFoundError(
                f"No open conflict: {conflict_id}", kind="conflict", identifier=conflict_id
            )
        record, claim_token = claimed

        try:
            snapshot = await self._apply(record, chosen)
        except Exception as e:
            await self.ledger.release(conflict_id, claim_token)
            logger.error(
                f"Conflict resolution failed, leaving it open: {e}",
                extra={"conflict_id": conflict_id, "resolution": chosen.value},
            )
            await self.alert_sink.alert(
                CONFLICT_UNRESOLVED,
                {
                    "conflict_id": conflict_id,
                    "entity_type": record.entity_type,
                    "entity_id": record.entity_id,
                    "resolution": chosen.value,
                    "error": str(e),
                },
            )
            raise

        if not await self.ledger.mark_resolved(conflict_id, chosen, actor_id, claim_token):
            logger.warning(
                "Resolution lease expired before the conflict was marked resolved",
                extra={"conflict_id": conflict_id, "resolution": chosen.value},
            )
            raise NotFoundError(
                f"Conflict was claimed by another resolver: {conflict_id}",
                kind="conflict",
                identifier=conflict_id,
            )

        resolved = await self.ledger.get(conflict_id)
        logger.info(
            "Conflict resolved",
            extra={
                "conflict_id": conflict_id,
                "entity_type": record.entity_type,
                "entity_id": record.entity_id,
                "resolution": chosen.value,
                "actor": actor_id,
            },
        )
        return ResolutionOutcome(conflict=resolved, snapshot=snapshot)  # type: ignore[arg-type]

    async def _apply(
        self,
        record: ConflictRecord,
        resolution: Resolution,
    ) -> dict[str, Any] | None:
        primary = self.stores.primary(self.modes)
        secondary = self.stores.secondary(self.modes)

        if resolution is Resolution.SERVER_WINS:
            await _write(secondary, record, record.server_snapshot)
            return record.server_snapshot

        if resolution is Resolution.CLIENT_WINS:
            snapshot = record.client_snapshot
            await _write(primary, record, snapshot)
            await self.producer.enqueue_mirror(
                OutboxOperation.DELETE if snapshot is None else OutboxOperation.UPSERT,
                record.entity_type,
                record.entity_id,
                snapshot,
                destination=self.modes.secondary_role,
                write_version=f"conflict:{record.id}:{resolution.value}",
            )
            return snapshot

        merged = merge_snapshots(record.server_snapshot, record.client_snapshot)
        await _write(primary, record, merged)
        await _write(secondary, record, merged)
        return merged


async def _write(
    store: RecordStore,
    record: ConflictRecord,
    snapshot: dict[str, Any] | None,
) -> None:
    if snapshot is None:
        await store.delete(record.entity_type, record.entity_id)
    else:
        await store.upsert(record.entity_type, record.entity_id, snapshot)
