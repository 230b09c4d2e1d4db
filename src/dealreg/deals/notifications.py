"""Fire-and-forget conflict notifications.

ConflictNotifier turns conflict transitions into ConflictEvent entries on the
event bus. Delivery runs in background asyncio tasks with its own timeout:
errors are logged but never reach the detection or resolution caller.

Exports:
    ConflictNotifier: Schedules conflict.created / resolved / dismissed events.
"""

from __future__ import annotations

import asyncio
from typing import Any, Protocol

import structlog

from src.dealreg.deals.schemas import ConflictRead, ResolutionStatus
from src.dealreg.events.schemas import ConflictEvent, ConflictEventType

logger = structlog.get_logger(__name__)


class EventPublisher(Protocol):
    async def publish(self, stream: str, event: ConflictEvent) -> str: ...


class ConflictNotifier:
    """Publish conflict lifecycle events without blocking the caller.

    Args:
        bus: Anything with ``async publish(stream, event)`` (EventBus in
            production, a recording double in tests).
        stream: Stream key events are appended to.
        timeout: Seconds allowed for one delivery.
    """

    def __init__(
        self,
        bus: EventPublisher,
        stream: str = "events:conflicts",
        timeout: float = 2.0,
    ) -> None:
        self._bus = bus
        self._stream = stream
        self._timeout = timeout
        self._pending: set[asyncio.Task] = set()

    @property
    def pending_count(self) -> int:
        return len(self._pending)

    def notify_created(self, conflict: ConflictRead) -> None:
        self._schedule(
            self._build(ConflictEventType.CONFLICT_CREATED, conflict, reason=conflict.reason)
        )

    def notify_resolved(
        self,
        conflict: ConflictRead,
        winning_deal_id: str | None = None,
        assigned_reseller_id: str | None = None,
    ) -> None:
        self._schedule(
            self._build(
                ConflictEventType.CONFLICT_RESOLVED,
                conflict,
                winning_deal_id=winning_deal_id,
                assigned_reseller_id=assigned_reseller_id,
            )
        )

    def notify_dismissed(self, conflict: ConflictRead) -> None:
        self._schedule(self._build(ConflictEventType.CONFLICT_DISMISSED, conflict))

    def notify_transition(self, conflict: ConflictRead, **extra: Any) -> None:
        """Dispatch on the conflict's terminal status."""
        if conflict.resolution_status == ResolutionStatus.RESOLVED:
            self.notify_resolved(conflict, **extra)
        elif conflict.resolution_status == ResolutionStatus.DISMISSED:
            self.notify_dismissed(conflict)

    async def drain(self) -> None:
        """Wait for every scheduled delivery to finish (shutdown, tests)."""
        while self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)

    # ── Internals ───────────────────────────────────────────────────────────

    @staticmethod
    def _build(
        event_type: ConflictEventType, conflict: ConflictRead, **data: Any
    ) -> ConflictEvent:
        return ConflictEvent(
            event_type=event_type,
            conflict_id=conflict.id,
            deal_id=conflict.deal_id,
            competing_deal_id=conflict.competing_deal_id,
            conflict_type=conflict.conflict_type.value,
            severity=conflict.severity.value,
            staff_id=conflict.assigned_to_staff,
            data={k: v for k, v in data.items() if v is not None},
        )

    def _schedule(self, event: ConflictEvent) -> None:
        task = asyncio.create_task(
            self._deliver(event), name=f"conflict_notify_{event.event_id}"
        )
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    async def _deliver(self, event: ConflictEvent) -> None:
        try:
            async with asyncio.timeout(self._timeout):
                await self._bus.publish(self._stream, event)
        except Exception as exc:
            logger.warning(
                "conflict_notification_failed",
                event_type=event.event_type.value,
                conflict_id=event.conflict_id,
                error=str(exc) or type(exc).__name__,
            )
