"""
Usage metering models.
"""

from datetime import datetime

from pydantic import BaseModel, ConfigDict, Field


class UsageRecord(BaseModel):
    """Append-only usage fact, keyed to the subscription's billing period."""

    model_config = ConfigDict(from_attributes=True)

    record_id: str
    subscription_id: str
    resource: str
    quantity: int
    period_start: datetime
    period_end: datetime
    period_sequence: int
    recorded_at: datetime


class QuotaCheckResult(BaseModel):
    """
    Outcome of a quota check.

    ``limit`` and ``remaining`` are ``None`` for unlimited resources, which
    are always allowed.
    """

    allowed: bool
    resource: str
    current_usage: int
    requested: int = 0
    limit: int | None = None
    remaining: int | None = None

    @property
    def is_unlimited(self) -> bool:
        return self.limit is None


class ResourceUsage(BaseModel):
    resource: str
    used: int
    limit: int | None = None
    remaining: int | None = None


class UsageSummary(BaseModel):
    """Per-resource totals for a subscription's current billing period."""

    subscription_id: str
    period_start: datetime
    period_end: datetime
    period_sequence: int
    resources: list[ResourceUsage] = Field(default_factory=list)
