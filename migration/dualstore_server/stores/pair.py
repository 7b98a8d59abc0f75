"""
The two stores taking part in the migration, addressed by role.
"""

from __future__ import annotations

from dataclasses import dataclass

from ..config import ModeConfig, StoreRole
from .base import RecordStore


@dataclass(frozen=True)
class StorePair:
    """Legacy and target store drivers.

    Attributes:
        legacy: Store being migrated away from
        target: Store being migrated to
    """

    legacy: RecordStore
    target: RecordStore

    def for_role(self, role: StoreRole) -> RecordStore:
        return self.legacy if role is StoreRole.LEGACY else self.target

    def primary(self, modes: ModeConfig) -> RecordStore:
        return self.for_role(modes.primary_role)

    def secondary(self, modes: ModeConfig) -> RecordStore:
        return self.for_role(modes.secondary_role)

    def by_role(self) -> dict[StoreRole, RecordStore]:
        return {StoreRole.LEGACY: self.legacy, StoreRole.TARGET: self.target}

    async def close(self) -> None:
        await self.legacy.close()
        await self.target.close()
