"""
Routing module for DualStore - mode-driven read/write routing.

This module handles:
- Choosing the store that serves reads (legacy, target, or shadow)
- Synchronous primary writes followed by outbox mirroring
- Background shadow comparisons feeding the conflict ledger
"""

from .models import ReadDescriptor, WriteDescriptor, WriteResult
from .router import ModeRouter
from .shadow import ShadowComparator, ShadowError

__all__ = [
    "ModeRouter",
    "ReadDescriptor",
    "ShadowComparator",
    "ShadowError",
    "WriteDescriptor",
    "WriteResult",
]
