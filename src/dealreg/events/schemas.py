"""Event schemas for conflict lifecycle notifications via Redis Streams.

Provides the ConflictEvent model carrying the conflict id and both deal ids.
Events serialize to flat string dicts for Redis Streams and deserialize back
losslessly.

Stream key: events:conflicts (configurable via CONFLICT_EVENTS_STREAM)
"""

from __future__ import annotations

import json
import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field, model_validator


class ConflictEventType(str, Enum):
    """Conflict lifecycle transitions published to the audit sink."""

    CONFLICT_CREATED = "conflict.created"
    CONFLICT_RESOLVED = "conflict.resolved"
    CONFLICT_DISMISSED = "conflict.dismissed"


class ConflictEvent(BaseModel):
    """Notification that a conflict was created or reached a terminal state.

    Attributes:
        event_id: Unique identifier (auto-generated UUID4).
        version: Schema version for forward compatibility.
        event_type: Which lifecycle transition happened.
        timestamp: UTC creation time.
        conflict_id: The conflict record.
        deal_id: Newly submitted side of the pair.
        competing_deal_id: Existing side of the pair.
        conflict_type: duplicate_end_user, territory_overlap or timing_conflict.
        severity: high, medium or low.
        staff_id: Staff member who resolved or dismissed, when known.
        data: Small inline extras (winning deal, assigned reseller, reason).
    """

    event_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    version: str = "1.0"
    event_type: ConflictEventType
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    conflict_id: str
    deal_id: str
    competing_deal_id: str
    conflict_type: str
    severity: str
    staff_id: str | None = None

    data: dict[str, Any] = Field(default_factory=dict)

    @model_validator(mode="after")
    def _validate_pair(self) -> ConflictEvent:
        """A conflict always references two different deals."""
        if self.deal_id == self.competing_deal_id:
            msg = f"deal_id and competing_deal_id must differ (both {self.deal_id!r})"
            raise ValueError(msg)
        return self

    def to_stream_dict(self) -> dict[str, str]:
        """Serialize all fields to a flat dict of strings for Redis Streams.

        Redis Streams require all field values to be strings. The data dict
        is JSON-encoded; datetimes use ISO format; None becomes empty string.

        Returns:
            Dictionary with string keys and string values suitable for XADD.
        """
        return {
            "event_id": self.event_id,
            "version": self.version,
            "event_type": self.event_type.value,
            "timestamp": self.timestamp.isoformat(),
            "conflict_id": self.conflict_id,
            "deal_id": self.deal_id,
            "competing_deal_id": self.competing_deal_id,
            "conflict_type": self.conflict_type,
            "severity": self.severity,
            "staff_id": self.staff_id or "",
            "data": json.dumps(self.data, default=str),
        }

    @classmethod
    def from_stream_dict(cls, raw: dict[str, str]) -> ConflictEvent:
        """Deserialize from a Redis Streams flat dict back to ConflictEvent.

        Reverses the encoding performed by ``to_stream_dict()``.
        """
        return cls(
            event_id=raw["event_id"],
            version=raw.get("version", "1.0"),
            event_type=ConflictEventType(raw["event_type"]),
            timestamp=datetime.fromisoformat(raw["timestamp"]),
            conflict_id=raw["conflict_id"],
            deal_id=raw["deal_id"],
            competing_deal_id=raw["competing_deal_id"],
            conflict_type=raw["conflict_type"],
            severity=raw["severity"],
            staff_id=raw.get("staff_id") or None,
            data=json.loads(raw["data"]) if raw.get("data") else {},
        )
