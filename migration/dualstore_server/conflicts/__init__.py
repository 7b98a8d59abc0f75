"""
Conflict module for DualStore - divergence tracking and resolution.

This module handles:
- The conflict ledger (one open record per entity)
- Snapshot diffing with numeric tolerance
- Operator resolutions: server-wins, client-wins, merge

Invariants:
    - At most one open conflict per (entity_type, entity_id)
    - Resolution values are validated before any write
    - No silent partial resolution
"""

from .diff import diff_fields, merge_snapshots, values_equal
from .ledger import ConflictLedger
from .models import ConflictRecord, ConflictStatus, Resolution
from .resolver import ConflictResolver, ResolutionOutcome

__all__ = [
    "ConflictLedger",
    "ConflictRecord",
    "ConflictResolver",
    "ConflictStatus",
    "Resolution",
    "ResolutionOutcome",
    "diff_fields",
    "merge_snapshots",
    "values_equal",
]
