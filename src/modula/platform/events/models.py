"""
Event models for the in-process event bus.
"""

from datetime import UTC, datetime
from enum import Enum
from typing import Any
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field


class EventPriority(str, Enum):
    """Event delivery priority."""

    LOW = "low"
    NORMAL = "normal"
    HIGH = "high"
    CRITICAL = "critical"


class EventStatus(str, Enum):
    """Lifecycle of a published event."""

    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


class EventMetadata(BaseModel):
    """Routing and audit metadata attached to every event."""

    model_config = ConfigDict(extra="allow")

    user_id: str | None = None
    source: str | None = None
    correlation_id: str | None = None


class Event(BaseModel):
    """A domain event published on the bus."""

    model_config = ConfigDict(validate_assignment=True)

    event_id: str = Field(default_factory=lambda: str(uuid4()))
    event_type: str
    payload: dict[str, Any] = Field(default_factory=dict)
    metadata: EventMetadata = Field(default_factory=EventMetadata)
    priority: EventPriority = EventPriority.NORMAL
    status: EventStatus = EventStatus.PENDING
    error_message: str | None = None
    created_at: datetime = Field(default_factory=lambda: datetime.now(UTC))
    processed_at: datetime | None = None
