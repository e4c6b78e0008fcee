"""Event Bus and typed event definitions for the orchestrator.

Endpoint commits and tunnel diagnostics flow as events. The UI notification
interface subscribes and forwards them over SSE.
"""
from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import AsyncIterator, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")


class EventBus:
    """In-process asyncio pub/sub keyed by event type.

    Subscribers get an asyncio.Queue from subscribe(), or use iter_events()
    for async iteration. publish() never blocks; a full queue drops the event.
    """

    def __init__(self) -> None:
        self._subscribers: dict[type, list[asyncio.Queue]] = {}

    def subscribe(self, event_type: type[T], maxsize: int = 0) -> asyncio.Queue[T]:
        queue: asyncio.Queue = asyncio.Queue(maxsize=maxsize)
        self._subscribers.setdefault(event_type, []).append(queue)
        return queue

    def unsubscribe(self, event_type: type[T], queue: asyncio.Queue) -> None:
        queues = self._subscribers.get(event_type, [])
        if queue in queues:
            queues.remove(queue)

    def publish(self, event: object) -> None:
        for queue in self._subscribers.get(type(event), []):
            try:
                queue.put_nowait(event)
            except asyncio.QueueFull:
                logger.warning("Event queue full, dropping %s", type(event).__name__)

    async def iter_events(self, event_type: type[T]) -> AsyncIterator[T]:
        queue = self.subscribe(event_type)
        try:
            while True:
                yield await queue.get()
        finally:
            self.unsubscribe(event_type, queue)


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


# ---------------------------------------------------------------------------
# Event types
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class EndpointCommittedEvent:
    """A new application endpoint was published."""
    url: str
    is_public: bool
    source: str  # "tunnel" | "local"
    timestamp: str = field(default_factory=_now)


@dataclass(frozen=True)
class TunnelLogEvent:
    """One line of tunnel client output (diagnostic only)."""
    stream: str  # "stdout" | "stderr"
    message: str
    timestamp: str = field(default_factory=_now)


@dataclass(frozen=True)
class TunnelUrlFoundEvent:
    """A tunnel URL appeared in client output, whether or not it won."""
    url: str
    stream: str
    full_log: str
    timestamp: str = field(default_factory=_now)


@dataclass(frozen=True)
class DetectionStateEvent:
    """The tunnel session moved to a new detection state."""
    state: str
    target: str
    timestamp: str = field(default_factory=_now)
