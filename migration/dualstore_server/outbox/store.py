"""
Durable outbox table.

Stores OutboxEntry rows in the control SQLite database. Every state change
is a conditional UPDATE so that concurrent drain() calls (separate requests
or separate processes) cannot double-claim or overwrite each other.

Invariants:
    - idempotency_key is UNIQUE; enqueue of an existing key is a no-op
    - claim() only succeeds for a PENDING entry that is due, or for a
      PROCESSING entry whose lease has expired
    - Completion updates only apply while the caller still holds the lease
      (status = 'processing' AND claimed_at = the caller's claim time)

Table schema:
    outbox:
        - idempotency_key TEXT PRIMARY KEY
        - operation TEXT ('upsert' | 'delete')
        - table_name TEXT
        - record_id TEXT
        - destination TEXT ('legacy' | 'target')
        - payload_json TEXT NULL
        - status TEXT
        - retries INTEGER
        - max_retries INTEGER
        - last_error TEXT NULL
        - next_retry_at INTEGER (Unix ms)
        - claimed_at INTEGER NULL (Unix ms)
        - created_at INTEGER (Unix ms)
        - updated_at INTEGER (Unix ms)
        - INDEX on (status, next_retry_at, created_at)
"""

from __future__ import annotations

import logging
import sqlite3
from collections.abc import Callable

from ..errors import NotFoundError
from ..stores.base import canonical_json
from ..stores.sqlite import SqliteDatabase
from .models import OutboxEntry, OutboxStatus, now_ms

logger = logging.getLogger(__name__)


class OutboxStore(SqliteDatabase):
    """SQLite-backed outbox table.

    Example:
        >>> outbox = OutboxStore("/var/lib/dualstore/control.db")
        >>> entry, created = await outbox.enqueue(entry)
        >>> ready = await outbox.select_ready(limit=10, now=now_ms(), lease_cutoff=0)
    """

    def __init__(
        self,
        db_path: str,
        wal_mode: bool = True,
        busy_timeout_ms: int = 5000,
        clock: Callable[[], int] = now_ms,
    ) -> None:
        super().__init__(db_path, name="outbox", wal_mode=wal_mode, busy_timeout_ms=busy_timeout_ms)
        self.clock = clock

    def _create_schema(self, conn: sqlite3.Connection) -> None:
        conn.executescript("""
            CREATE TABLE IF NOT EXISTS outbox (
                idempotency_key TEXT PRIMARY KEY,
                operation TEXT NOT NULL,
                table_name TEXT NOT NULL,
                record_id TEXT NOT NULL,
                destination TEXT NOT NULL,
                payload_json TEXT,
                status TEXT NOT NULL DEFAULT 'pending',
                retries INTEGER NOT NULL DEFAULT 0,
                max_retries INTEGER NOT NULL DEFAULT 10,
                last_error TEXT,
                next_retry_at INTEGER NOT NULL,
                claimed_at INTEGER,
                created_at INTEGER NOT NULL,
                updated_at INTEGER NOT NULL
            );

            CREATE INDEX IF NOT EXISTS idx_outbox_ready
                ON outbox(status, next_retry_at, created_at);
            CREATE INDEX IF NOT EXISTS idx_outbox_record
                ON outbox(table_name, record_id);
        """)

    async def enqueue(self, entry: OutboxEntry) -> tuple[OutboxEntry, bool]:
        """Insert an entry unless its idempotency key already exists.

        Args:
            entry: Entry to record (status/retries are reset to a fresh row)

        Returns:
            Tuple of (stored entry, created). created is False when a row
            with the same key already existed; that row is returned as-is.
        """
        now = self.clock()
        with self._get_connection() as conn:
            cursor = conn.execute(
                """
                INSERT OR IGNORE INTO outbox (
                    idempotency_key, operation, table_name, record_id, destination,
                    payload_json, status, retries, max_retries, last_error,
                    next_retry_at, claimed_at, created_at, updated_at
                )
                VALUES (?, ?, ?, ?, ?, ?, 'pending', 0, ?, NULL, ?, NULL, ?, ?)
                """,
                (
                    entry.idempotency_key,
                    entry.operation.value,
                    entry.table,
                    entry.record_id,
                    entry.destination.value,
                    canonical_json(entry.payload) if entry.payload is not None else None,
                    entry.max_retries,
                    now,
                    now,
                    now,
                ),
            )
            created = cursor.rowcount > 0
            row = conn.execute(
                "SELECT * FROM outbox WHERE idempotency_key = ?",
                (entry.idempotency_key,),
            ).fetchone()

        stored = OutboxEntry.from_row(row)
        if not created:
            logger.debug(
                "Outbox entry already exists",
                extra={"idempotency_key": entry.idempotency_key, "status": stored.status.value},
            )
        return stored, created

    async def get(self, idempotency_key: str) -> OutboxEntry | None:
        with self._get_connection() as conn:
            row = conn.execute(
                "SELECT * FROM outbox WHERE idempotency_key = ?", (idempotency_key,)
            ).fetchone()
        return OutboxEntry.from_row(row) if row else None

    async def select_ready(self, limit: int, now: int, lease_cutoff: int) -> list[OutboxEntry]:
        """Oldest-first entries that drain() may claim.

        Args:
            limit: Maximum entries to return
            now: Current time (Unix ms)
            lease_cutoff: Processing entries claimed at or before this time
                are considered abandoned
        """
        with self._get_connection() as conn:
            rows = conn.execute(
                """
                SELECT * FROM outbox
                WHERE (status = 'pending' AND next_retry_at <= ?)
                   OR (status = 'processing' AND claimed_at <= ?)
                ORDER BY created_at ASC, idempotency_key ASC
                LIMIT ?
                """,
                (now, lease_cutoff, limit),
            ).fetchall()
        return [OutboxEntry.from_row(row) for row in rows]

    async def claim(self, idempotency_key: str, now: int, lease_cutoff: int) -> bool:
        """Atomically move an entry to PROCESSING.

        Returns:
            True if this caller now holds the lease
        """
        with self._get_connection() as conn:
            cursor = conn.execute(
                """
                UPDATE outbox
                SET status = 'processing', claimed_at = ?, updated_at = ?
                WHERE idempotency_key = ?
                  AND ((status = 'pending' AND next_retry_at <= ?)
                       OR (status = 'processing' AND claimed_at <= ?))
                """,
                (now, now, idempotency_key, now, lease_cutoff),
            )
            return cursor.rowcount > 0

    async def mark_done(self, idempotency_key: str, claimed_at: int) -> bool:
        return self._complete(
            idempotency_key,
            claimed_at,
            "status = 'done', last_error = NULL",
            (),
        )

    async def mark_retry(
        self,
        idempotency_key: str,
        claimed_at: int,
        retries: int,
        next_retry_at: int,
        error: str,
    ) -> bool:
        return self._complete(
            idempotency_key,
            claimed_at,
            "status = 'pending', retries = ?, next_retry_at = ?, last_error = ?, claimed_at = NULL",
            (retries, next_retry_at, error),
        )

    async def mark_failed(
        self,
        idempotency_key: str,
        claimed_at: int,
        retries: int,
        error: str,
    ) -> bool:
        return self._complete(
            idempotency_key,
            claimed_at,
            "status = 'failed', retries = ?, last_error = ?, claimed_at = NULL",
            (retries, error),
        )

    def _complete(
        self,
        idempotency_key: str,
        claimed_at: int,
        assignments: str,
        params: tuple,
    ) -> bool:
        with self._get_connection() as conn:
            cursor = conn.execute(
                f"""
                UPDATE outbox SET {assignments}, updated_at = ?
                WHERE idempotency_key = ? AND status = 'processing' AND claimed_at = ?
                """,
                (*params, self.clock(), idempotency_key, claimed_at),
            )
            updated = cursor.rowcount > 0

        if not updated:
            logger.warning(
                "Outbox lease lost before completion",
                extra={"idempotency_key": idempotency_key, "claimed_at": claimed_at},
            )
        return updated

    async def requeue(self, idempotency_key: str) -> OutboxEntry:
        """Return a FAILED entry to PENDING with a fresh retry budget.

        Raises:
            NotFoundError: If no failed entry has this key
        """
        now = self.clock()
        with self._get_connection() as conn:
            cursor = conn.execute(
                """
                UPDATE outbox
                SET status = 'pending', retries = 0, next_retry_at = ?, claimed_at = NULL,
                    updated_at = ?
                WHERE idempotency_key = ? AND status = 'failed'
                """,
                (now, now, idempotency_key),
            )
            if cursor.rowcount == 0:
                raise NotFoundError(
                    f"No failed outbox entry: {idempotency_key}",
                    kind="outbox_entry",
                    identifier=idempotency_key,
                )
            row = conn.execute(
                "SELECT * FROM outbox WHERE idempotency_key = ?", (idempotency_key,)
            ).fetchone()

        logger.info("Requeued failed outbox entry", extra={"idempotency_key": idempotency_key})
        return OutboxEntry.from_row(row)

    async def list_by_status(self, status: OutboxStatus, limit: int = 100) -> list[OutboxEntry]:
        with self._get_connection() as conn:
            rows = conn.execute(
                "SELECT * FROM outbox WHERE status = ? ORDER BY created_at ASC LIMIT ?",
                (status.value, limit),
            ).fetchall()
        return [OutboxEntry.from_row(row) for row in rows]

    async def count_by_status(self) -> dict[str, int]:
        counts = {status.value: 0 for status in OutboxStatus}
        with self._get_connection() as conn:
            for row in conn.execute("SELECT status, COUNT(*) AS n FROM outbox GROUP BY status"):
                counts[row["status"]] = row["n"]
        return counts
