"""
In-memory record store for testing.

This module provides a RecordStore backed by dictionaries for:
- Unit tests
- Integration tests
- Local development without a database

Invariants:
    - All data is lost on process exit
    - Same idempotency semantics as the SQLite driver
    - Callers never share dict instances with the store (deep copies)

How to change safely:
    - This is test-only code, changes don't affect production
    - Keep interface compatible with RecordStore protocol
    - Add features to help with testing scenarios
"""

from __future__ import annotations

import asyncio
import copy
import logging
from collections import defaultdict
from typing import Any

from .base import check_filter_fields, content_hash, normalize_record

logger = logging.getLogger(__name__)


class InMemoryRecordStore:
    """In-memory implementation of RecordStore.

    Attributes:
        mutation_count: Number of calls that actually changed stored data
        call_count: Number of get/upsert/delete/query calls

    Example:
        >>> store = InMemoryRecordStore("target")
        >>> await store.upsert("expenses", "e1", {"amount": 10})
        True
        >>> await store.upsert("expenses", "e1", {"amount": 10})
        False
    """

    def __init__(self, name: str = "memory") -> None:
        self._name = name
        self._tables: dict[str, dict[str, dict[str, Any]]] = defaultdict(dict)
        self._failures: list[Exception] = []
        self._delay_seconds = 0.0
        self.mutation_count = 0
        self.call_count = 0

    @property
    def name(self) -> str:
        return self._name

    async def get(self, table: str, record_id: str) -> dict[str, Any] | None:
        await self._before_call()
        record = self._tables[table].get(record_id)
        return copy.deepcopy(record) if record is not None else None

    async def upsert(self, table: str, record_id: str, payload: dict[str, Any]) -> bool:
        await self._before_call()
        record = normalize_record(record_id, payload)
        existing = self._tables[table].get(record_id)
        if existing is not None and content_hash(existing) == content_hash(record):
            return False

        self._tables[table][record_id] = copy.deepcopy(record)
        self.mutation_count += 1
        return True

    async def delete(self, table: str, record_id: str) -> bool:
        await self._before_call()
        removed = self._tables[table].pop(record_id, None)
        if removed is None:
            return False
        self.mutation_count += 1
        return True

    async def query(
        self,
        table: str,
        filters: dict[str, Any] | None = None,
        limit: int | None = None,
    ) -> list[dict[str, Any]]:
        await self._before_call()
        filters = check_filter_fields(filters)
        results = []
        for record_id in sorted(self._tables[table]):
            record = self._tables[table][record_id]
            if all(record.get(k) == v for k, v in filters.items()):
                results.append(copy.deepcopy(record))
                if limit is not None and len(results) >= limit:
                    break
        return results

    async def close(self) -> None:
        logger.debug("InMemoryRecordStore closed", extra={"store": self._name})

    async def _before_call(self) -> None:
        self.call_count += 1
        if self._delay_seconds:
            await asyncio.sleep(self._delay_seconds)
        if self._failures:
            raise self._failures.pop(0)

    # Testing helpers

    def inject_failure(self, exception: Exception, times: int = 1) -> None:
        """Make the next `times` calls raise `exception`."""
        self._failures.extend([exception] * times)

    def clear_failures(self) -> None:
        self._failures.clear()

    def set_delay(self, seconds: float) -> None:
        """Delay every call, e.g. to simulate a hung store."""
        self._delay_seconds = seconds

    def snapshot(self, table: str) -> dict[str, dict[str, Any]]:
        """Copy of every record in a table (testing helper)."""
        return copy.deepcopy(dict(self._tables[table]))
