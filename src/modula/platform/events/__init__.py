"""
Event bus for publishing domain events to external collaborators.
"""

from modula.platform.events.bus import EventBus, EventHandler, get_event_bus, reset_event_bus
from modula.platform.events.exceptions import EventError, EventPublishError
from modula.platform.events.models import Event, EventMetadata, EventPriority, EventStatus

__all__ = [
    "Event",
    "EventBus",
    "EventError",
    "EventHandler",
    "EventMetadata",
    "EventPriority",
    "EventPublishError",
    "EventStatus",
    "get_event_bus",
    "reset_event_bus",
]
