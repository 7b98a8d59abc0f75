"""
Parity checking between the primary and secondary store.

Compares every record of a table on both sides by fingerprint and reports
count deltas, records missing on either side and payload mismatches.
Optionally records payload mismatches and secondary-only records in the
conflict ledger, and queues repair mirrors for records the secondary store
is missing or holds stale.

Invariants:
    - Checking is read-only unless record_conflicts or repair is requested
    - Repairs go through the outbox, never directly to the secondary store
    - Repairs only upsert; a record present only in the secondary store is
      left in place (recorded as a conflict under record_conflicts)
    - Payload comparison uses the same tolerance as shadow reads
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any

from ..config import ModeConfig
from ..conflicts.diff import diff_fields
from ..conflicts.ledger import ConflictLedger
from ..outbox.models import OutboxOperation
from ..outbox.producer import OutboxProducer
from ..stores.base import content_hash
from ..stores.pair import StorePair

logger = logging.getLogger(__name__)

MISSING_IN_PRIMARY = "missing_in_primary"
MISSING_IN_SECONDARY = "missing_in_secondary"
PAYLOAD_MISMATCH = "payload_mismatch"

MAX_REPORTED_DIFFS = 20


@dataclass
class ParityDiff:
    record_id: str
    kind: str
    fields: list[str] = field(default_factory=list)
    primary_hash: str | None = None
    secondary_hash: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "record_id": self.record_id,
            "type": self.kind,
            "fields": self.fields,
            "primary_hash": self.primary_hash,
            "secondary_hash": self.secondary_hash,
        }


@dataclass
class ParityReport:
    """Result of comparing one table.

    Attributes:
        table: Table compared
        primary_count: Records in the primary store
        secondary_count: Records in the secondary store
        diffs: Every divergent record
        conflicts_recorded: Diffs written to the conflict ledger
        repairs_queued: Mirror entries enqueued toward the secondary store
    """

    table: str
    primary_count: int = 0
    secondary_count: int = 0
    diffs: list[ParityDiff] = field(default_factory=list)
    conflicts_recorded: int = 0
    repairs_queued: int = 0

    @property
    def count_delta(self) -> int:
        return self.secondary_count - self.primary_count

    @property
    def in_parity(self) -> bool:
        return not self.diffs

    def count(self, kind: str) -> int:
        return sum(1 for diff in self.diffs if diff.kind == kind)

    def to_dict(self) -> dict[str, Any]:
        return {
            "table": self.table,
            "primary_count": self.primary_count,
            "secondary_count": self.secondary_count,
            "count_delta": self.count_delta,
            "in_parity": self.in_parity,
            MISSING_IN_PRIMARY: self.count(MISSING_IN_PRIMARY),
            MISSING_IN_SECONDARY: self.count(MISSING_IN_SECONDARY),
            PAYLOAD_MISMATCH: self.count(PAYLOAD_MISMATCH),
            "conflicts_recorded": self.conflicts_recorded,
            "repairs_queued": self.repairs_queued,
            "diffs": [diff.to_dict() for diff in self.diffs[:MAX_REPORTED_DIFFS]],
        }


class ParityChecker:
    """Compares tables across the two stores.

    Example:
        >>> checker = ParityChecker(stores, modes, ledger=ledger)
        >>> report = await checker.check_table("expenses", record_conflicts=True)
        >>> print(report.to_dict())
    """

    def __init__(
        self,
        stores: StorePair,
        modes: ModeConfig,
        ledger: ConflictLedger | None = None,
        producer: OutboxProducer | None = None,
    ) -> None:
        self.stores = stores
        self.modes = modes
        self.ledger = ledger
        self.producer = producer

    async def check_table(
        self,
        table: str,
        record_conflicts: bool = False,
        repair: bool = False,
    ) -> ParityReport:
        """Compare every record of a table.

        Args:
            table: Table name
            record_conflicts: Record payload mismatches and records missing
                from the primary store in the conflict ledger
            repair: Enqueue mirrors for records missing from or stale in the
                secondary store

        Raises:
            ValueError: If record_conflicts or repair is requested without
                the ledger or producer it needs
        """
        if record_conflicts and self.ledger is None:
            raise ValueError("record_conflicts requires a conflict ledger")
        if repair and self.producer is None:
            raise ValueError("repair requires an outbox producer")

        primary_rows = await self.stores.primary(self.modes).query(table)
        secondary_rows = await self.stores.secondary(self.modes).query(table)
        primary = {str(row["id"]): row for row in primary_rows}
        secondary = {str(row["id"]): row for row in secondary_rows}

        report = ParityReport(table=table, primary_count=len(primary), secondary_count=len(secondary))

        for record_id in sorted(set(primary) | set(secondary)):
            server = primary.get(record_id)
            client = secondary.get(record_id)

            if client is None:
                report.diffs.append(
                    ParityDiff(record_id, MISSING_IN_SECONDARY, primary_hash=content_hash(server))
                )
            elif server is None:
                report.diffs.append(
                    ParityDiff(record_id, MISSING_IN_PRIMARY, secondary_hash=content_hash(client))
                )
                if record_conflicts:
                    await self.ledger.detect(table, record_id, None, client)  # type: ignore[union-attr]
                    report.conflicts_recorded += 1
            else:
                fields = diff_fields(server, client)
                if not fields:
                    continue
                report.diffs.append(
                    ParityDiff(
                        record_id,
                        PAYLOAD_MISMATCH,
                        fields=fields,
                        primary_hash=content_hash(server),
                        secondary_hash=content_hash(client),
                    )
                )
                if record_conflicts:
                    await self.ledger.detect(table, record_id, server, client)  # type: ignore[union-attr]
                    report.conflicts_recorded += 1

            if repair and server is not None:
                # Keyed on both sides so a repeated check of the same drift
                # dedupes, while drift after an earlier mirror gets a new entry.
                seen = content_hash(client) if client is not None else "missing"
                await self.producer.enqueue_mirror(  # type: ignore[union-attr]
                    OutboxOperation.UPSERT,
                    table,
                    record_id,
                    server,
                    destination=self.modes.secondary_role,
                    write_version=f"repair:{content_hash(server)}:{seen}",
                )
                report.repairs_queued += 1

        logger.info(
            "Parity check complete",
            extra={
                "table": table,
                "primary_count": report.primary_count,
                "secondary_count": report.secondary_count,
                "diff_count": len(report.diffs),
            },
        )
        return report
