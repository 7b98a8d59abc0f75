"""
Reconciliation tools for DualStore - out-of-band parity checks.
"""

from .parity import (
    MISSING_IN_PRIMARY,
    MISSING_IN_SECONDARY,
    PAYLOAD_MISMATCH,
    ParityChecker,
    ParityDiff,
    ParityReport,
)

__all__ = [
    "MISSING_IN_PRIMARY",
    "MISSING_IN_SECONDARY",
    "PAYLOAD_MISMATCH",
    "ParityChecker",
    "ParityDiff",
    "ParityReport",
]
