"""Event bus exceptions."""


class EventError(Exception):
    """Base event bus error."""


class EventPublishError(EventError):
    """Raised when an event cannot be accepted by the bus."""
