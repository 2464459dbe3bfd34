"""
In-process asynchronous event bus.

Handlers run as background tasks after ``publish`` returns, so a slow or
failing subscriber never blocks or fails the publishing operation. Handler
errors are captured on the stored event.
"""

import asyncio
from collections import defaultdict
from collections.abc import Awaitable, Callable
from datetime import UTC, datetime
from typing import Any

import structlog

from modula.platform.events.exceptions import EventPublishError
from modula.platform.events.models import Event, EventMetadata, EventPriority, EventStatus

logger = structlog.get_logger(__name__)

EventHandler = Callable[[Event], Awaitable[None]]


class EventBus:
    """Publish/subscribe bus keyed by event type."""

    def __init__(self, enable_persistence: bool = True) -> None:
        self.enable_persistence = enable_persistence
        self._handlers: dict[str, list[EventHandler]] = defaultdict(list)
        self._events: dict[str, Event] = {}
        self._tasks: set[asyncio.Task[None]] = set()

    def subscribe(self, event_type: str, handler: EventHandler) -> None:
        """Register a handler for an event type (``*`` receives everything)."""
        self._handlers[event_type].append(handler)
        logger.debug("Event handler subscribed", event_type=event_type, handler=handler.__name__)

    def unsubscribe(self, event_type: str, handler: EventHandler) -> None:
        """Remove a previously registered handler."""
        handlers = self._handlers.get(event_type, [])
        if handler in handlers:
            handlers.remove(handler)

    async def publish(
        self,
        event_type: str,
        payload: dict[str, Any] | None = None,
        metadata: dict[str, Any] | None = None,
        priority: EventPriority = EventPriority.NORMAL,
    ) -> Event:
        """Publish an event and schedule its handlers."""
        if not event_type:
            raise EventPublishError("event_type is required")

        event = Event(
            event_type=event_type,
            payload=payload or {},
            metadata=EventMetadata(**(metadata or {})),
            priority=priority,
        )
        if self.enable_persistence:
            self._events[event.event_id] = event

        handlers = [*self._handlers.get(event_type, []), *self._handlers.get("*", [])]
        if handlers:
            task = asyncio.create_task(self._dispatch(event, handlers))
            self._tasks.add(task)
            task.add_done_callback(self._tasks.discard)

        return event

    async def _dispatch(self, event: Event, handlers: list[EventHandler]) -> None:
        event.status = EventStatus.PROCESSING
        for handler in handlers:
            try:
                await handler(event)
            except Exception as exc:
                event.status = EventStatus.FAILED
                event.error_message = str(exc)
                logger.exception(
                    "Event handler failed",
                    event_id=event.event_id,
                    event_type=event.event_type,
                    handler=getattr(handler, "__name__", repr(handler)),
                )
        if event.status != EventStatus.FAILED:
            event.status = EventStatus.COMPLETED
        event.processed_at = datetime.now(UTC)

    async def get_event(self, event_id: str) -> Event | None:
        """Look up a persisted event."""
        return self._events.get(event_id)

    def events_of_type(self, event_type: str) -> list[Event]:
        """All persisted events of a type, oldest first."""
        return [event for event in self._events.values() if event.event_type == event_type]

    async def drain(self) -> None:
        """Wait for every in-flight handler dispatch to finish."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)


_event_bus: EventBus | None = None


def get_event_bus(enable_persistence: bool = True) -> EventBus:
    """Get the global event bus (singleton)."""
    global _event_bus
    if _event_bus is None:
        _event_bus = EventBus(enable_persistence=enable_persistence)
    return _event_bus


def reset_event_bus() -> None:
    """Drop the global event bus (mainly for testing)."""
    global _event_bus
    _event_bus = None
