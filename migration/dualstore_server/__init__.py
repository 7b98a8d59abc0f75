"""
DualStore Server - zero-downtime migration between two record stores.

This package routes application reads and writes between a legacy store and
a target store while the data is moved across:
- Mode routing (legacy / shadow / target reads, single / dual writes)
- Durable outbox for asynchronous mirror writes
- Conflict ledger for divergence between the two stores
- User-scoped read cache with scope-tagged invalidation

Architecture:
    ┌─────────────┐     ┌─────────────┐     ┌─────────────────┐
    │  Mutation   │────▶│ ModeRouter  │────▶│  Primary store  │
    │  (HTTP)     │     │   .write    │     │  (sync commit)  │
    └─────────────┘     └──────┬──────┘     └─────────────────┘
                               │ dual
                               ▼
                        ┌─────────────┐     ┌─────────────────┐
                        │   Outbox    │────▶│  OutboxWorker   │
                        │  (SQLite)   │     │    .drain       │
                        └─────────────┘     └────────┬────────┘
                                                     ▼
    ┌─────────────┐     ┌─────────────┐     ┌─────────────────┐
    │  ReadCache  │────▶│ ModeRouter  │     │ Secondary store │
    │ (Redis/mem) │     │   .read     │     │ (mirror apply)  │
    └─────────────┘     └──────┬──────┘     └─────────────────┘
                               │ shadow
                               ▼
                        ┌─────────────┐
                        │  Conflict   │
                        │   Ledger    │
                        └─────────────┘

Invariants:
    - The primary store is authoritative for the current mode
    - One idempotency key yields at most one effective mirror application
    - At most one open conflict exists per (entity_type, entity_id)
    - The cache is advisory: a cache failure never fails a read

How to change safely:
    - Mirror application must stay idempotent and order-insensitive
    - New mutation kinds must declare their cache scope set
    - Mode changes take effect on process restart only
"""

from ._version import __version__

__all__ = ["__version__"]
