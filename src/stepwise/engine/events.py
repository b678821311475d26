"""Run and step lifecycle events for live observers and instrumentation."""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timezone
from typing import Any, Callable

logger = logging.getLogger(__name__)


class EventBus:
    """In-memory publish/subscribe event bus.

    Async subscribers receive events via asyncio.Queue instances; synchronous
    listeners are called inline. Publishing never blocks a run and never
    raises into it.
    """

    # Valid event types
    EVENT_TYPES = {
        "run.started",
        "run.completed",
        "run.failed",
        "run.timed_out",
        "step.started",
        "step.retrying",
        "step.completed",
        "step.failed",
        "step.skipped",
        "step.not_run",
    }

    def __init__(self, maxsize: int = 256) -> None:
        self._subscribers: set[asyncio.Queue] = set()
        self._listeners: list[Callable[[dict[str, Any]], None]] = []
        self._maxsize = maxsize

    def subscribe(self) -> asyncio.Queue:
        """Create a new subscriber queue and register it.

        The caller must call unsubscribe() when done.
        """
        queue: asyncio.Queue = asyncio.Queue(maxsize=self._maxsize)
        self._subscribers.add(queue)
        logger.debug(
            "EventBus: new subscriber (total=%d)", len(self._subscribers)
        )
        return queue

    def unsubscribe(self, queue: asyncio.Queue) -> None:
        """Remove a subscriber queue."""
        self._subscribers.discard(queue)
        logger.debug(
            "EventBus: subscriber removed (total=%d)", len(self._subscribers)
        )

    def add_listener(self, listener: Callable[[dict[str, Any]], None]) -> None:
        self._listeners.append(listener)

    def remove_listener(self, listener: Callable[[dict[str, Any]], None]) -> None:
        if listener in self._listeners:
            self._listeners.remove(listener)

    def publish(self, event_type: str, data: dict[str, Any]) -> None:
        """Publish an event to all subscribers (fire-and-forget).

        If a queue is full the event is dropped for that subscriber.
        """
        if event_type not in self.EVENT_TYPES:
            logger.warning("EventBus: unknown event type '%s'", event_type)

        event = {
            "type": event_type,
            "data": data,
            "timestamp": datetime.now(timezone.utc).isoformat(),
        }

        for queue in list(self._subscribers):
            try:
                queue.put_nowait(event)
            except asyncio.QueueFull:
                logger.debug(
                    "EventBus: dropping event for slow subscriber "
                    "(type=%s)", event_type
                )

        for listener in list(self._listeners):
            try:
                listener(event)
            except Exception as e:
                logger.warning(f"EventBus listener failed on '{event_type}': {e}")

    @property
    def subscriber_count(self) -> int:
        """Number of active subscribers and listeners."""
        return len(self._subscribers) + len(self._listeners)


# Default instance used when the engine is not given its own bus
event_bus = EventBus()
