"""Event bus for conflict notifications using Redis Streams.

Appends ConflictEvent entries to a capped stream and exposes the stream
metadata used by the readiness check. Consumers (notification delivery,
audit export) read the stream with their own consumer groups.
"""

from __future__ import annotations

from typing import Any

import redis.asyncio as aioredis
import structlog

from src.dealreg.events.schemas import ConflictEvent

logger = structlog.get_logger(__name__)


class EventBus:
    """Publish conflict events to Redis Streams.

    Args:
        redis: Async Redis client.
        maxlen: Approximate cap applied to every stream on XADD.
    """

    def __init__(self, redis: aioredis.Redis, maxlen: int = 1000) -> None:
        self._redis = redis
        self._maxlen = maxlen

    async def publish(self, stream: str, event: ConflictEvent) -> str:
        """Append an event to ``stream`` with approximate trimming.

        Args:
            stream: Stream key to publish to.
            event: ConflictEvent to publish.

        Returns:
            Redis message ID assigned by XADD.
        """
        message_id = await self._redis.xadd(
            stream,
            event.to_stream_dict(),
            maxlen=self._maxlen,
            approximate=True,
        )

        logger.debug(
            "event_published",
            stream=stream,
            event_type=event.event_type.value,
            event_id=event.event_id,
            message_id=message_id,
        )
        return message_id

    async def get_stream_info(self, stream: str) -> dict[str, Any]:
        """Get stream metadata (length, first/last entry) for monitoring."""
        return await self._redis.xinfo_stream(stream)
