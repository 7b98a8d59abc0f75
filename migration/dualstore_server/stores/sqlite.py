"""
SQLite record store for DualStore.

This module stores the records of one side of the migration (legacy or
target) in a single SQLite database file.

Invariants:
    - One row per (table_name, record_id)
    - content_hash holds the fingerprint of payload_json; an upsert whose
      fingerprint matches is a no-op
    - All writes run inside BEGIN IMMEDIATE transactions

How to change safely:
    - Schema migrations must be backward compatible
    - Keep error translation in _translate_errors so callers only see
      TransientStoreError / TerminalStoreError

Table schema:
    records:
        - table_name TEXT
        - record_id TEXT
        - payload_json TEXT
        - content_hash TEXT
        - updated_at INTEGER (Unix ms)
        - PRIMARY KEY (table_name, record_id)
"""

from __future__ import annotations

import json
import logging
import sqlite3
import time
from collections.abc import Iterator
from contextlib import contextmanager
from pathlib import Path
from typing import Any

from ..errors import TerminalStoreError, TransientStoreError
from .base import canonical_json, check_filter_fields, content_hash, normalize_record

logger = logging.getLogger(__name__)


class SqliteDatabase:
    """Connection handling shared by every SQLite-backed component.

    Thread safety:
        Each operation opens its own connection.
        SQLite handles concurrent access via WAL mode.
    """

    def __init__(
        self,
        db_path: str,
        name: str = "sqlite",
        wal_mode: bool = True,
        busy_timeout_ms: int = 5000,
    ) -> None:
        """Initialize the database handle.

        Args:
            db_path: Path of the SQLite database file
            name: Name used in logs and errors
            wal_mode: Enable SQLite WAL mode
            busy_timeout_ms: SQLite busy timeout
        """
        self.db_path = Path(db_path)
        self._name = name
        self.wal_mode = wal_mode
        self.busy_timeout_ms = busy_timeout_ms
        self._initialized = False

    @property
    def name(self) -> str:
        return self._name

    def _create_schema(self, conn: sqlite3.Connection) -> None:
        raise NotImplementedError

    @contextmanager
    def _translate_errors(self) -> Iterator[None]:
        try:
            yield
        except sqlite3.OperationalError as e:
            raise TransientStoreError(f"{self._name}: {e}", store=self._name) from e
        except sqlite3.DatabaseError as e:
            raise TerminalStoreError(f"{self._name}: {e}", store=self._name) from e

    @contextmanager
    def _get_connection(self) -> Iterator[sqlite3.Connection]:
        """Open a configured connection, creating the schema on first use."""
        self.db_path.parent.mkdir(parents=True, exist_ok=True)

        with self._translate_errors():
            conn = sqlite3.connect(
                str(self.db_path),
                timeout=self.busy_timeout_ms / 1000.0,
                isolation_level=None,  # Autocommit by default, explicit transactions
            )
            conn.row_factory = sqlite3.Row
            try:
                conn.execute(f"PRAGMA busy_timeout = {self.busy_timeout_ms}")
                if self.wal_mode:
                    conn.execute("PRAGMA journal_mode = WAL")
                conn.execute("PRAGMA synchronous = NORMAL")
                if not self._initialized:
                    self._create_schema(conn)
                    self._initialized = True

                yield conn
            finally:
                conn.close()


class SqliteRecordStore(SqliteDatabase):
    """SQLite-backed RecordStore.

    Example:
        >>> store = SqliteRecordStore("/var/lib/dualstore/legacy.db", name="legacy")
        >>> await store.upsert("groups", "g1", {"name": "Trip"})
    """

    def _create_schema(self, conn: sqlite3.Connection) -> None:
        conn.executescript("""
            CREATE TABLE IF NOT EXISTS records (
                table_name TEXT NOT NULL,
                record_id TEXT NOT NULL,
                payload_json TEXT NOT NULL,
                content_hash TEXT NOT NULL,
                updated_at INTEGER NOT NULL,
                PRIMARY KEY (table_name, record_id)
            );

            CREATE INDEX IF NOT EXISTS idx_records_updated
                ON records(table_name, updated_at DESC);
        """)

    async def get(self, table: str, record_id: str) -> dict[str, Any] | None:
        with self._get_connection() as conn:
            row = conn.execute(
                "SELECT payload_json FROM records WHERE table_name = ? AND record_id = ?",
                (table, record_id),
            ).fetchone()
        return json.loads(row["payload_json"]) if row else None

    async def upsert(self, table: str, record_id: str, payload: dict[str, Any]) -> bool:
        record = normalize_record(record_id, payload)
        digest = content_hash(record)

        with self._get_connection() as conn:
            conn.execute("BEGIN IMMEDIATE")
            try:
                row = conn.execute(
                    "SELECT content_hash FROM records WHERE table_name = ? AND record_id = ?",
                    (table, record_id),
                ).fetchone()
                if row and row["content_hash"] == digest:
                    conn.execute("COMMIT")
                    return False

                conn.execute(
                    """
                    INSERT INTO records (table_name, record_id, payload_json, content_hash, updated_at)
                    VALUES (?, ?, ?, ?, ?)
                    ON CONFLICT(table_name, record_id) DO UPDATE SET
                        payload_json = excluded.payload_json,
                        content_hash = excluded.content_hash,
                        updated_at = excluded.updated_at
                    """,
                    (table, record_id, canonical_json(record), digest, int(time.time() * 1000)),
                )
                conn.execute("COMMIT")
            except Exception:
                conn.execute("ROLLBACK")
                raise

        logger.debug(
            "Upserted record",
            extra={"store": self._name, "table": table, "record_id": record_id},
        )
        return True

    async def delete(self, table: str, record_id: str) -> bool:
        with self._get_connection() as conn:
            cursor = conn.execute(
                "DELETE FROM records WHERE table_name = ? AND record_id = ?",
                (table, record_id),
            )
            return cursor.rowcount > 0

    async def query(
        self,
        table: str,
        filters: dict[str, Any] | None = None,
        limit: int | None = None,
    ) -> list[dict[str, Any]]:
        filters = check_filter_fields(filters)

        sql = "SELECT payload_json FROM records WHERE table_name = ?"
        params: list[Any] = [table]
        for name, value in filters.items():
            sql += f" AND json_extract(payload_json, '$.{name}') IS ?"
            params.append(value)
        sql += " ORDER BY record_id"
        if limit is not None:
            sql += " LIMIT ?"
            params.append(limit)

        with self._get_connection() as conn:
            rows = conn.execute(sql, params).fetchall()
        return [json.loads(row["payload_json"]) for row in rows]

    async def close(self) -> None:
        logger.debug("SqliteRecordStore closed", extra={"store": self._name})
