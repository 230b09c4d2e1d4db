"""Conflict lifecycle events published to Redis Streams.

Exports:
    ConflictEvent: Event Pydantic model referencing a conflict and both deals.
    ConflictEventType: conflict.created, conflict.resolved, conflict.dismissed.
    EventBus: Publish to Redis Streams with approximate trimming.
"""

from __future__ import annotations

from src.dealreg.events.schemas import ConflictEvent, ConflictEventType

__all__ = [
    "ConflictEvent",
    "ConflictEventType",
    "EventBus",
]


def __getattr__(name: str):  # noqa: N807
    """Lazy-load the bus so schema imports do not pull in redis."""
    if name == "EventBus":
        from src.dealreg.events.bus import EventBus

        return EventBus
    msg = f"module {__name__!r} has no attribute {name!r}"
    raise AttributeError(msg)
