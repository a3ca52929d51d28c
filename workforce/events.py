"""
Standardized event surface for the workforce scheduler.
"""

from __future__ import annotations

import asyncio
import json
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import Any, Optional
from uuid import UUID, uuid4

logger = logging.getLogger(__name__)


class EventType(str, Enum):
    TASK_QUEUED = "task.queued"
    TASK_DISPATCHED = "task.dispatched"
    TASK_COMPLETED = "task.completed"
    TASK_FAILED = "task.failed"
    TASK_CANCELLED = "task.cancelled"

    ESCALATION_CREATED = "escalation.created"
    ESCALATION_RESOLVED = "escalation.resolved"
    HANDOFF_CREATED = "handoff.created"

    REVIEW_COMPLETED = "review.completed"
    AMENDMENT_CREATED = "amendment.created"
    AMENDMENT_EVALUATED = "amendment.evaluated"
    POLICY_VIOLATION = "policy.violation"


@dataclass
class WorkforceEvent:
    """Standardized event for the workforce system."""

    type: EventType
    id: UUID = field(default_factory=uuid4)
    task_id: Optional[str] = None
    role: Optional[str] = None
    message: str = ""
    data: dict[str, Any] = field(default_factory=dict)
    timestamp: datetime = field(default_factory=lambda: datetime.now(UTC))

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": str(self.id),
            "type": self.type.value,
            "task_id": self.task_id,
            "role": self.role,
            "message": self.message,
            "data": self.data,
            "timestamp": self.timestamp.isoformat(),
        }


EventHandler = Callable[[WorkforceEvent], Awaitable[None] | None]


class EventBus:
    """Delivers events to typed observers and to subscriber channels.

    Every channel returned by ``subscribe`` receives every event emitted after
    it was created. A bounded channel that is full drops its oldest event, so
    a slow consumer never blocks the emitter. Handler failures are logged and
    never reach the emitter.
    """

    def __init__(self) -> None:
        self._handlers: list[EventHandler] = []
        self._channels: list[tuple[asyncio.Queue[WorkforceEvent], frozenset[EventType] | None]] = []

    def on_event(self, handler: EventHandler) -> None:
        self._handlers.append(handler)

    def subscribe(
        self, types: set[EventType] | None = None, maxsize: int = 0
    ) -> asyncio.Queue[WorkforceEvent]:
        queue: asyncio.Queue[WorkforceEvent] = asyncio.Queue(maxsize=maxsize)
        self._channels.append((queue, frozenset(types) if types else None))
        return queue

    def unsubscribe(self, queue: asyncio.Queue[WorkforceEvent]) -> None:
        self._channels = [(q, t) for q, t in self._channels if q is not queue]

    async def emit(self, event: WorkforceEvent) -> None:
        for queue, types in self._channels:
            if types is not None and event.type not in types:
                continue
            if queue.full():
                queue.get_nowait()
                logger.warning("Subscriber channel full; dropped oldest event before %s", event.type.value)
            queue.put_nowait(event)

        for handler in self._handlers:
            try:
                result = handler(event)
                if hasattr(result, "__await__"):
                    await result
            except Exception as exc:
                logger.warning("Event handler error for %s: %s", event.type.value, exc)


def redis_publish_handler(channel_prefix: str = "channel:workforce") -> EventHandler:
    """Build a handler that publishes events to Redis Pub/Sub."""

    async def publish(event: WorkforceEvent) -> None:
        try:
            from .redis_client import get_redis_client

            redis = get_redis_client()
            channel = f"{channel_prefix}:{event.type.value}"
            await redis.publish(channel, json.dumps(event.to_dict(), default=str))
        except Exception as exc:
            logger.warning("Redis publish failed: %s", exc)

    return publish
