"""
Outbox worker.

Drains pending outbox entries and applies them to their destination store.
The worker is not a loop: each drain() call is triggered externally (the
flush endpoint, a cron job, or the CLI) and handles at most `limit` entries.

Invariants:
    - Entries are claimed oldest-first with a conditional update; an entry
      claimed by another caller inside its lease is never re-claimed
    - A PROCESSING entry whose lease expired is re-claimable; the
      destination store's idempotent apply makes re-application safe
    - Every destination call is bounded by apply_timeout_ms; a timeout is
      a transient failure
    - retries == max_retries ends in FAILED and raises an alert

How to change safely:
    - Keep backoff strictly positive so next_retry_at always moves forward
    - Test crash recovery by leaving entries in PROCESSING past the lease
"""

from __future__ import annotations

import asyncio
import logging
import random
from collections.abc import Callable, Mapping

from ..alerts import OUTBOX_ENTRY_FAILED, AlertSink, LoggingAlertSink
from ..config import OutboxConfig, StoreRole
from ..errors import TerminalStoreError, TransientStoreError
from ..stores.base import RecordStore
from .models import DrainResult, OutboxEntry, OutboxOperation, now_ms
from .store import OutboxStore

logger = logging.getLogger(__name__)


class OutboxWorker:
    """Applies outbox entries to the destination stores.

    Example:
        >>> worker = OutboxWorker(outbox, {StoreRole.LEGACY: legacy, StoreRole.TARGET: target})
        >>> result = await worker.drain(limit=100)
        >>> print(result.succeeded, result.failed)
    """

    def __init__(
        self,
        outbox: OutboxStore,
        stores: Mapping[StoreRole, RecordStore],
        config: OutboxConfig | None = None,
        alert_sink: AlertSink | None = None,
        clock: Callable[[], int] = now_ms,
        rng: random.Random | None = None,
    ) -> None:
        """Initialize the worker.

        Args:
            outbox: Outbox table
            stores: Destination stores by role
            config: Retry/lease/timeout settings
            alert_sink: Receives terminal failures
            clock: Time source (Unix ms)
            rng: Random source for backoff jitter
        """
        self.outbox = outbox
        self.stores = dict(stores)
        self.config = config or OutboxConfig()
        self.alert_sink = alert_sink or LoggingAlertSink()
        self.clock = clock
        self.rng = rng or random.Random()

        self._drain_count = 0
        self._applied_count = 0
        self._failed_count = 0

    def backoff_ms(self, retries: int) -> int:
        """Delay before the next attempt after `retries` failures.

        Exponential from backoff_base_ms, capped at backoff_cap_ms, with
        equal jitter: half the delay is fixed, half is random.
        """
        exponent = min(max(retries, 1) - 1, 32)
        capped = min(self.config.backoff_cap_ms, self.config.backoff_base_ms * 2**exponent)
        half = capped / 2
        return max(1, int(half + self.rng.uniform(0, half)))

    async def drain(self, limit: int) -> DrainResult:
        """Claim and apply up to `limit` ready entries.

        Args:
            limit: Maximum entries to claim in this call

        Returns:
            DrainResult with per-outcome counts
        """
        result = DrainResult()
        if limit < 1:
            return result

        now = self.clock()
        candidates = await self.outbox.select_ready(
            limit=limit,
            now=now,
            lease_cutoff=now - self.config.lease_timeout_ms,
        )

        for entry in candidates:
            claimed_at = self.clock()
            claimed = await self.outbox.claim(
                entry.idempotency_key,
                now=claimed_at,
                lease_cutoff=claimed_at - self.config.lease_timeout_ms,
            )
            if not claimed:
                result.skipped += 1
                continue

            result.drained += 1
            await self._process(entry, claimed_at, result)

        self._drain_count += 1
        self._applied_count += result.succeeded
        self._failed_count += result.dead_lettered

        logger.info("Outbox drained", extra={"limit": limit, **result.to_dict()})
        return result

    async def _process(self, entry: OutboxEntry, claimed_at: int, result: DrainResult) -> None:
        timeout = self.config.apply_timeout_ms / 1000.0
        try:
            await asyncio.wait_for(self._apply(entry), timeout=timeout)

        except TerminalStoreError as e:
            result.failed += 1
            result.dead_lettered += 1
            await self._dead_letter(entry, claimed_at, entry.retries + 1, str(e))

        except asyncio.TimeoutError:
            await self._retry_or_fail(
                entry, claimed_at, f"Destination store call timed out after {timeout}s", result
            )

        except TransientStoreError as e:
            await self._retry_or_fail(entry, claimed_at, str(e), result)

        except Exception as e:
            logger.error(f"Unexpected error applying outbox entry: {e}", exc_info=True)
            await self._retry_or_fail(entry, claimed_at, str(e) or type(e).__name__, result)

        else:
            await self.outbox.mark_done(entry.idempotency_key, claimed_at)
            result.succeeded += 1
            logger.debug(
                "Applied outbox entry",
                extra={
                    "idempotency_key": entry.idempotency_key,
                    "table": entry.table,
                    "record_id": entry.record_id,
                },
            )

    async def _apply(self, entry: OutboxEntry) -> None:
        store = self.stores[entry.destination]
        if entry.operation is OutboxOperation.UPSERT:
            await store.upsert(entry.table, entry.record_id, entry.payload or {})
        else:
            await store.delete(entry.table, entry.record_id)

    async def _retry_or_fail(
        self,
        entry: OutboxEntry,
        claimed_at: int,
        error: str,
        result: DrainResult,
    ) -> None:
        retries = entry.retries + 1
        result.failed += 1

        if retries >= entry.max_retries:
            result.dead_lettered += 1
            await self._dead_letter(entry, claimed_at, retries, error)
            return

        next_retry_at = self.clock() + self.backoff_ms(retries)
        await self.outbox.mark_retry(entry.idempotency_key, claimed_at, retries, next_retry_at, error)
        result.retried += 1
        logger.warning(
            "Outbox entry will be retried",
            extra={
                "idempotency_key": entry.idempotency_key,
                "retries": retries,
                "next_retry_at": next_retry_at,
                "error": error,
            },
        )

    async def _dead_letter(
        self,
        entry: OutboxEntry,
        claimed_at: int,
        retries: int,
        error: str,
    ) -> None:
        await self.outbox.mark_failed(entry.idempotency_key, claimed_at, retries, error)
        await self.alert_sink.alert(
            OUTBOX_ENTRY_FAILED,
            {
                "idempotency_key": entry.idempotency_key,
                "operation": entry.operation.value,
                "table": entry.table,
                "record_id": entry.record_id,
                "destination": entry.destination.value,
                "retries": retries,
                "error": error,
            },
        )

    @property
    def stats(self) -> dict[str, int]:
        """Get worker statistics."""
        return {
            "drain_count": self._drain_count,
            "applied_count": self._applied_count,
            "failed_count": self._failed_count,
        }
