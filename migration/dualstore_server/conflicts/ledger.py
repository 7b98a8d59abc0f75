"""
Conflict ledger.

Records divergence between the primary and secondary store for an entity.
Detection is create-or-refresh: while a conflict is unresolved for an
entity, later detections update its snapshots instead of adding rows.

Lifecycle:
    open -> resolving (claim) -> resolved (mark_resolved)
                              -> open     (release, or lease expiry)

Invariants:
    - At most one unresolved (open or resolving) conflict per
      (entity_type, entity_id), enforced by a partial unique index and by
      doing the lookup and write inside one BEGIN IMMEDIATE transaction
    - detected_at is set once; refreshes only touch snapshots, diff_fields,
      detection_count and updated_at
    - claim() only succeeds for an open conflict, or a resolving one whose
      lease has expired; each claim gets a fresh claim_token
    - mark_resolved() and release() only apply while the caller's
      claim_token still holds

Table schema:
    conflicts:
        - id TEXT PRIMARY KEY
        - entity_type TEXT
        - entity_id TEXT
        - server_snapshot TEXT NULL (JSON)
        - client_snapshot TEXT NULL (JSON)
        - status TEXT ('open' | 'resolving' | 'resolved')
        - resolution TEXT NULL
        - resolved_by TEXT NULL
        - resolved_at INTEGER NULL
        - claim_token TEXT NULL
        - claimed_at INTEGER NULL (Unix ms)
        - detected_at INTEGER
        - updated_at INTEGER
        - detection_count INTEGER
        - diff_fields TEXT (JSON list)
        - UNIQUE (entity_type, entity_id) WHERE status IN ('open', 'resolving')
"""

from __future__ import annotations

import json
import logging
import sqlite3
import uuid
from collections.abc import Callable
from typing import Any

from ..outbox.models import now_ms
from ..stores.base import canonical_json
from ..stores.sqlite import SqliteDatabase
from .diff import diff_fields
from .models import ConflictRecord, Resolution

logger = logging.getLogger(__name__)

_UNRESOLVED = "status IN ('open', 'resolving')"


def _dump(snapshot: dict[str, Any] | None) -> str | None:
    return canonical_json(snapshot) if snapshot is not None else None


class ConflictLedger(SqliteDatabase):
    """SQLite-backed conflict ledger.

    Example:
        >>> ledger = ConflictLedger("/var/lib/dualstore/control.db")
        >>> record, created = await ledger.detect("expenses", "e1", {"a": 1}, {"a": 2})
        >>> claimed = await ledger.claim(record.id)
    """

    def __init__(
        self,
        db_path: str,
        wal_mode: bool = True,
        busy_timeout_ms: int = 5000,
        resolve_lease_ms: int = 60_000,
        clock: Callable[[], int] = now_ms,
    ) -> None:
        super().__init__(db_path, name="conflicts", wal_mode=wal_mode, busy_timeout_ms=busy_timeout_ms)
        self.resolve_lease_ms = resolve_lease_ms
        self.clock = clock

    def _create_schema(self, conn: sqlite3.Connection) -> None:
        conn.executescript("""
            CREATE TABLE IF NOT EXISTS conflicts (
                id TEXT PRIMARY KEY,
                entity_type TEXT NOT NULL,
                entity_id TEXT NOT NULL,
                server_snapshot TEXT,
                client_snapshot TEXT,
                status TEXT NOT NULL DEFAULT 'open',
                resolution TEXT,
                resolved_by TEXT,
                resolved_at INTEGER,
                claim_token TEXT,
                claimed_at INTEGER,
                detected_at INTEGER NOT NULL,
                updated_at INTEGER NOT NULL,
                detection_count INTEGER NOT NULL DEFAULT 1,
                diff_fields TEXT NOT NULL DEFAULT '[]'
            );

            CREATE UNIQUE INDEX IF NOT EXISTS idx_conflicts_one_unresolved
                ON conflicts(entity_type, entity_id) WHERE status IN ('open', 'resolving');
            CREATE INDEX IF NOT EXISTS idx_conflicts_status
                ON conflicts(status, detected_at);
        """)

    async def detect(
        self,
        entity_type: str,
        entity_id: str,
        server_snapshot: dict[str, Any] | None,
        client_snapshot: dict[str, Any] | None,
    ) -> tuple[ConflictRecord, bool]:
        """Record a divergence for an entity.

        Args:
            entity_type: Store table name
            entity_id: Record identifier
            server_snapshot: Primary store view (None when absent)
            client_snapshot: Secondary store view (None when absent)

        Returns:
            Tuple of (unresolved conflict record, created). created is False
            when an existing unresolved record was refreshed.
        """
        now = self.clock()
        fields = json.dumps(diff_fields(server_snapshot, client_snapshot))

        with self._get_connection() as conn:
            conn.execute("BEGIN IMMEDIATE")
            try:
                row = conn.execute(
                    f"""
                    SELECT id FROM conflicts
                    WHERE entity_type = ? AND entity_id = ? AND {_UNRESOLVED}
                    """,
                    (entity_type, entity_id),
                ).fetchone()

                if row:
                    conflict_id = row["id"]
                    created = False
                    conn.execute(
                        """
                        UPDATE conflicts
                        SET server_snapshot = ?, client_snapshot = ?, diff_fields = ?,
                            detection_count = detection_count + 1, updated_at = ?
                        WHERE id = ?
                        """,
                        (_dump(server_snapshot), _dump(client_snapshot), fields, now, conflict_id),
                    )
                else:
                    conflict_id = str(uuid.uuid4())
                    created = True
                    conn.execute(
                        """
                        INSERT INTO conflicts (
                            id, entity_type, entity_id, server_snapshot, client_snapshot,
                            status, detected_at, updated_at, detection_count, diff_fields
                        )
                        VALUES (?, ?, ?, ?, ?, 'open', ?, ?, 1, ?)
                        """,
                        (
                            conflict_id,
                            entity_type,
                            entity_id,
                            _dump(server_snapshot),
                            _dump(client_snapshot),
                            now,
                            now,
                            fields,
                        ),
                    )

                stored = conn.execute(
                    "SELECT * FROM conflicts WHERE id = ?", (conflict_id,)
                ).fetchone()
                conn.execute("COMMIT")

            except Exception:
                conn.execute("ROLLBACK")
                raise

        record = ConflictRecord.from_row(stored)
        logger.info(
            "Conflict detected" if created else "Conflict refreshed",
            extra={
                "conflict_id": record.id,
                "entity_type": entity_type,
                "entity_id": entity_id,
                "diff_fields": record.diff_fields,
                "detection_count": record.detection_count,
            },
        )
        return record, created

    async def get(self, conflict_id: str) -> ConflictRecord | None:
        with self._get_connection() as conn:
            row = conn.execute("SELECT * FROM conflicts WHERE id = ?", (conflict_id,)).fetchone()
        return ConflictRecord.from_row(row) if row else None

    async def find_open(self, entity_type: str, entity_id: str) -> ConflictRecord | None:
        """Find the unresolved conflict of an entity, if any."""
        with self._get_connection() as conn:
            row = conn.execute(
                f"""
                SELECT * FROM conflicts
                WHERE entity_type = ? AND entity_id = ? AND {_UNRESOLVED}
                """,
                (entity_type, entity_id),
            ).fetchone()
        return ConflictRecord.from_row(row) if row else None

    async def list_open(
        self,
        entity_type: str | None = None,
        limit: int = 100,
    ) -> list[ConflictRecord]:
        """List unresolved conflicts, oldest first.

        Conflicts being resolved are included until they are marked resolved.
        """
        sql = f"SELECT * FROM conflicts WHERE {_UNRESOLVED}"
        params: list[Any] = []
        if entity_type:
            sql += " AND entity_type = ?"
            params.append(entity_type)
        sql += " ORDER BY detected_at ASC LIMIT ?"
        params.append(limit)

        with self._get_connection() as conn:
            rows = conn.execute(sql, params).fetchall()
        return [ConflictRecord.from_row(row) for row in rows]

    async def count_open(self) -> int:
        with self._get_connection() as conn:
            row = conn.execute(f"SELECT COUNT(*) AS n FROM conflicts WHERE {_UNRESOLVED}").fetchone()
        return row["n"]

    async def claim(self, conflict_id: str) -> tuple[ConflictRecord, str] | None:
        """Claim a conflict for resolution.

        Returns:
            Tuple of (claimed record, claim token), or None when the conflict
            is missing, resolved, or held by another resolver whose lease is
            still valid
        """
        now = self.clock()
        token = uuid.uuid4().hex

        with self._get_connection() as conn:
            conn.execute("BEGIN IMMEDIATE")
            try:
                cursor = conn.execute(
                    """
                    UPDATE conflicts
                    SET status = 'resolving', claim_token = ?, claimed_at = ?, updated_at = ?
                    WHERE id = ?
                      AND (status = 'open' OR (status = 'resolving' AND claimed_at <= ?))
                    """,
                    (token, now, now, conflict_id, now - self.resolve_lease_ms),
                )
                row = None
                if cursor.rowcount > 0:
                    row = conn.execute(
                        "SELECT * FROM conflicts WHERE id = ?", (conflict_id,)
                    ).fetchone()
                conn.execute("COMMIT")

            except Exception:
                conn.execute("ROLLBACK")
                raise

        if row is None:
            return None
        logger.debug("Conflict claimed", extra={"conflict_id": conflict_id})
        return ConflictRecord.from_row(row), token

    async def release(self, conflict_id: str, claim_token: str) -> bool:
        """Return a claimed conflict to open.

        Returns:
            True if the caller still held the claim
        """
        with self._get_connection() as conn:
            cursor = conn.execute(
                """
                UPDATE conflicts
                SET status = 'open', claim_token = NULL, claimed_at = NULL, updated_at = ?
                WHERE id = ? AND status = 'resolving' AND claim_token = ?
                """,
                (self.clock(), conflict_id, claim_token),
            )
            return cursor.rowcount > 0

    async def mark_resolved(
        self,
        conflict_id: str,
        resolution: Resolution,
        actor_id: str,
        claim_token: str,
    ) -> bool:
        """Transition a claimed conflict to resolved.

        Returns:
            True if the caller still held the claim and the conflict is now
            resolved
        """
        now = self.clock()
        with self._get_connection() as conn:
            cursor = conn.execute(
                """
                UPDATE conflicts
                SET status = 'resolved', resolution = ?, resolved_by = ?, resolved_at = ?,
                    claim_token = NULL, claimed_at = NULL, updated_at = ?
                WHERE id = ? AND status = 'resolving' AND claim_token = ?
                """,
                (resolution.value, actor_id, now, now, conflict_id, claim_token),
            )
            return cursor.rowcount > 0
