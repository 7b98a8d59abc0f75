"""
Outbox module for DualStore - durable mirroring of primary writes.

This module handles:
- Outbox entries keyed by a deterministic idempotency key
- The producer that records mirror intents after a primary commit
- The worker that drains entries into the destination store with
  retry, exponential backoff and terminal failure

Invariants:
    - One idempotency key yields at most one effective mirror application
    - Concurrent drains never double-claim an entry
    - Mirror application is idempotent and order-insensitive
"""

from .models import (
    DrainResult,
    OutboxEntry,
    OutboxOperation,
    OutboxStatus,
    derive_idempotency_key,
)
from .producer import OutboxProducer
from .store import OutboxStore
from .worker import OutboxWorker

__all__ = [
    "DrainResult",
    "OutboxEntry",
    "OutboxOperation",
    "OutboxStatus",
    "OutboxProducer",
    "OutboxStore",
    "OutboxWorker",
    "derive_idempotency_key",
]
