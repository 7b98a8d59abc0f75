"""
Conflict ledger data model.

A ConflictRecord captures a detected divergence between the primary store
(server snapshot) and the secondary store (client snapshot) for one entity.
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from ..errors import ValidationError


class ConflictStatus(Enum):
    OPEN = "open"
    RESOLVING = "resolving"
    RESOLVED = "resolved"


class Resolution(Enum):
    """Operator-chosen way to converge a conflict."""

    SERVER_WINS = "server-wins"
    CLIENT_WINS = "client-wins"
    MERGE = "merge"

    @classmethod
    def parse(cls, value: Any) -> Resolution:
        """Parse a resolution at the boundary.

        Raises:
            ValidationError: If the value is not one of the three resolutions
        """
        if isinstance(value, cls):
            return value
        if isinstance(value, str):
            try:
                return cls(value)
            except ValueError:
                pass
        allowed = ", ".join(member.value for member in cls)
        raise ValidationError(
            f"Invalid resolution {value!r}. Must be one of: {allowed}",
            field_name="resolution",
            value=value,
        )


@dataclass
class ConflictRecord:
    """Divergence between the two stores for one entity.

    Attributes:
        id: Conflict identifier
        entity_type: Store table name
        entity_id: Record identifier
        server_snapshot: Primary store view (None when absent there)
        client_snapshot: Secondary store view (None when absent there)
        status: open, resolving (claimed by a resolver) or resolved
        resolution: How it was resolved (None while open)
        resolved_by: Actor that resolved it
        resolved_at: Resolution time (Unix ms)
        detected_at: First detection time (Unix ms), preserved on refresh
        updated_at: Last refresh time (Unix ms)
        detection_count: Times the divergence has been detected
        diff_fields: Top-level fields that differ
    """

    id: str
    entity_type: str
    entity_id: str
    server_snapshot: dict[str, Any] | None
    client_snapshot: dict[str, Any] | None
    status: ConflictStatus = ConflictStatus.OPEN
    resolution: Resolution | None = None
    resolved_by: str | None = None
    resolved_at: int | None = None
    detected_at: int = 0
    updated_at: int = 0
    detection_count: int = 1
    diff_fields: list[str] = field(default_factory=list)

    @property
    def is_open(self) -> bool:
        return self.status is not ConflictStatus.RESOLVED

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for serialization."""
        return {
            "id": self.id,
            "entity_type": self.entity_type,
            "entity_id": self.entity_id,
            "server_snapshot": self.server_snapshot,
            "client_snapshot": self.client_snapshot,
            "status": self.status.value,
            "resolution": self.resolution.value if self.resolution else None,
            "resolved_by": self.resolved_by,
            "resolved_at": self.resolved_at,
            "detected_at": self.detected_at,
            "updated_at": self.updated_at,
            "detection_count": self.detection_count,
            "diff_fields": list(self.diff_fields),
        }

    @classmethod
    def from_row(cls, row: Any) -> ConflictRecord:
        """Create from a sqlite3.Row of the conflicts table."""

        def _load(text: str | None) -> Any:
            return json.loads(text) if text is not None else None

        return cls(
            id=row["id"],
            entity_type=row["entity_type"],
            entity_id=row["entity_id"],
            server_snapshot=_load(row["server_snapshot"]),
            client_snapshot=_load(row["client_snapshot"]),
            status=ConflictStatus(row["status"]),
            resolution=Resolution(row["resolution"]) if row["resolution"] else None,
            resolved_by=row["resolved_by"],
            resolved_at=row["resolved_at"],
            detected_at=row["detected_at"],
            updated_at=row["updated_at"],
            detection_count=row["detection_count"],
            diff_fields=_load(row["diff_fields"]) or [],
        )
