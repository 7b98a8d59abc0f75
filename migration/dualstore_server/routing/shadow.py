"""
Shadow-read comparison.

In shadow mode the router answers every read from the legacy store and
hands the result to a ShadowComparator, which re-reads the target store in
a background task and records any divergence in the conflict ledger.

Invariants:
    - schedule() never blocks and never raises; the caller's latency and
      outcome do not depend on the target store
    - Comparison tasks are tracked; cancel_all() stops every one of them
    - At most max_in_flight comparisons run at once; extra ones are dropped
    - Comparison errors go to a bounded queue that drops its oldest entry
      when full

How to change safely:
    - Keep the target read under compare_timeout_ms
    - Never let a comparison error escape the task
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import Any

from ..config import ShadowConfig
from ..conflicts.diff import diff_fields
from ..conflicts.ledger import ConflictLedger
from ..stores.base import RecordStore
from .models import ReadDescriptor

logger = logging.getLogger(__name__)


@dataclass
class ShadowError:
    """A comparison that could not complete."""

    descriptor: ReadDescriptor
    error: str
    occurred_at: float = field(default_factory=time.time)


class ShadowComparator:
    """Background comparator for shadow reads.

    Example:
        >>> comparator = ShadowComparator(ledger, ShadowConfig())
        >>> comparator.schedule(descriptor, legacy_result, target_store)
        >>> await comparator.wait_idle()
    """

    def __init__(self, ledger: ConflictLedger, config: ShadowConfig | None = None) -> None:
        self.ledger = ledger
        self.config = config or ShadowConfig()
        self._tasks: set[asyncio.Task] = set()
        self._errors: asyncio.Queue[ShadowError] = asyncio.Queue(maxsize=self.config.error_queue_size)

        self._scheduled = 0
        self._dropped = 0
        self._mismatches = 0
        self._error_count = 0

    @property
    def in_flight(self) -> int:
        return len(self._tasks)

    def schedule(
        self,
        descriptor: ReadDescriptor,
        primary_result: Any,
        secondary: RecordStore,
    ) -> asyncio.Task | None:
        """Start a background comparison.

        Args:
            descriptor: The read that was served
            primary_result: What the caller received (record, None or list)
            secondary: Store to compare against

        Returns:
            The comparison task, or None if it was dropped
        """
        if len(self._tasks) >= self.config.max_in_flight:
            self._dropped += 1
            logger.debug(
                "Shadow comparison dropped, too many in flight",
                extra={"read": descriptor.describe(), "in_flight": len(self._tasks)},
            )
            return None

        task = asyncio.get_running_loop().create_task(
            self._compare(descriptor, primary_result, secondary)
        )
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        self._scheduled += 1
        return task

    async def _compare(
        self,
        descriptor: ReadDescriptor,
        primary_result: Any,
        secondary: RecordStore,
    ) -> None:
        timeout = self.config.compare_timeout_ms / 1000.0
        try:
            if descriptor.is_point_read:
                shadow_result = await asyncio.wait_for(
                    secondary.get(descriptor.table, descriptor.record_id),  # type: ignore[arg-type]
                    timeout=timeout,
                )
                await self._compare_record(
                    descriptor.table, descriptor.record_id, primary_result, shadow_result  # type: ignore[arg-type]
                )
            else:
                shadow_result = await asyncio.wait_for(
                    secondary.query(descriptor.table, descriptor.filters, descriptor.limit),
                    timeout=timeout,
                )
                await self._compare_list(descriptor, primary_result or [], shadow_result)

        except asyncio.CancelledError:
            raise
        except asyncio.TimeoutError:
            self._record_error(descriptor, f"Shadow read timed out after {timeout}s")
        except Exception as e:
            self._record_error(descriptor, str(e) or type(e).__name__)

    async def _compare_record(
        self,
        table: str,
        record_id: str,
        primary: dict[str, Any] | None,
        shadow: dict[str, Any] | None,
    ) -> None:
        fields = diff_fields(primary, shadow)
        if not fields:
            return

        self._mismatches += 1
        logger.warning(
            "Shadow read mismatch",
            extra={"table": table, "record_id": record_id, "diff_fields": fields},
        )
        await self.ledger.detect(table, record_id, primary, shadow)

    async def _compare_list(
        self,
        descriptor: ReadDescriptor,
        primary: list[dict[str, Any]],
        shadow: list[dict[str, Any]],
    ) -> None:
        if len(primary) != len(shadow):
            self._mismatches += 1
            logger.warning(
                "Shadow read count mismatch",
                extra={
                    "read": descriptor.describe(),
                    "primary_count": len(primary),
                    "shadow_count": len(shadow),
                },
            )

        # Only records present on both sides are compared; a limit can push
        # a record out of one window without the stores diverging on it.
        shadow_by_id = {str(record.get("id")): record for record in shadow}
        for record in primary:
            record_id = str(record.get("id"))
            if record_id in shadow_by_id:
                await self._compare_record(descriptor.table, record_id, record, shadow_by_id[record_id])

    def _record_error(self, descriptor: ReadDescriptor, error: str) -> None:
        self._error_count += 1
        logger.warning(
            f"Shadow comparison failed: {error}",
            extra={"read": descriptor.describe()},
        )
        if self._errors.full():
            self._errors.get_nowait()
        self._errors.put_nowait(ShadowError(descriptor=descriptor, error=error))

    def drain_errors(self) -> list[ShadowError]:
        """Remove and return every queued comparison error."""
        errors = []
        while not self._errors.empty():
            errors.append(self._errors.get_nowait())
        return errors

    async def wait_idle(self) -> None:
        """Wait until every scheduled comparison has finished."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def cancel_all(self) -> None:
        """Cancel every in-flight comparison."""
        tasks = list(self._tasks)
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
            logger.info("Cancelled shadow comparisons", extra={"count": len(tasks)})

    @property
    def stats(self) -> dict[str, int]:
        """Get comparator statistics."""
        return {
            "scheduled": self._scheduled,
            "dropped": self._dropped,
            "mismatches": self._mismatches,
            "errors": self._error_count,
            "in_flight": len(self._tasks),
        }
