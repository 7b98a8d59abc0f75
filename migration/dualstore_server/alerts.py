"""
Alert sink for conditions that need operator attention.

Raised for:
- Outbox entries that reached the terminal failed state
- Mirror entries that could not be enqueued after a primary commit
- Conflict resolutions that failed part-way and were left open
"""

from __future__ import annotations

import logging
from abc import abstractmethod
from typing import Any, Protocol, runtime_checkable

logger = logging.getLogger(__name__)

OUTBOX_ENTRY_FAILED = "outbox_entry_failed"
OUTBOX_ENQUEUE_GAP = "outbox_enqueue_gap"
CONFLICT_UNRESOLVED = "conflict_unresolved"


@runtime_checkable
class AlertSink(Protocol):
    """Receives operator alerts."""

    @abstractmethod
    async def alert(self, event: str, details: dict[str, Any]) -> None:
        ...


class LoggingAlertSink:
    """Default sink: alerts become ERROR log records with an `alert` field."""

    async def alert(self, event: str, details: dict[str, Any]) -> None:
        logger.error(f"ALERT {event}", extra={"alert": event, **details})
