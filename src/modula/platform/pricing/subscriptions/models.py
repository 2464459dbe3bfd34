"""
Subscription models.

Pydantic models for the subscription aggregate and the results of
lifecycle operations.
"""

from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Any

from pydantic import AliasChoices, BaseModel, ConfigDict, Field

from modula.platform.pricing.coupons.models import DiscountType
from modula.platform.pricing.periods import BillingPeriod


class SubscriptionStatus(str, Enum):
    """Subscription lifecycle states."""

    PENDING = "pending"
    TRIAL = "trial"
    ACTIVE = "active"
    PAUSED = "paused"
    PAST_DUE = "past_due"
    CANCELLED = "cancelled"
    EXPIRED = "expired"

    @property
    def is_terminal(self) -> bool:
        return self in (SubscriptionStatus.CANCELLED, SubscriptionStatus.EXPIRED)


class RefundType(str, Enum):
    """Refund quote kinds."""

    FULL = "full"
    PRORATED = "prorated"
    PARTIAL = "partial"


class Subscription(BaseModel):
    """Subscription aggregate."""

    model_config = ConfigDict(from_attributes=True)

    subscription_id: str
    user_id: str
    plan_id: str
    billing_period: BillingPeriod
    currency: str
    status: SubscriptionStatus

    price_point_id: str
    unit_amount: Decimal

    trial_ends_at: datetime | None = None
    current_period_start: datetime
    current_period_end: datetime
    period_sequence: int = 1
    billing_anchor_at: datetime | None = None
    auto_renew: bool = True

    cancel_at_period_end: bool = False
    cancel_reason: str | None = None
    cancelled_at: datetime | None = None
    ended_at: datetime | None = None

    paused_at: datetime | None = None
    resume_at: datetime | None = None

    pending_plan_id: str | None = None
    pending_effective_at: datetime | None = None

    coupon_id: str | None = None
    discount_type: DiscountType | None = None
    discount_value: Decimal | None = None
    discount_recurring: bool = False

    account_credit: Decimal = Decimal("0")
    metadata: dict[str, Any] = Field(
        default_factory=dict, validation_alias=AliasChoices("metadata_json", "metadata")
    )
    version: int = 1

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal

    @property
    def has_pending_change(self) -> bool:
        return self.pending_plan_id is not None


class SubscriptionCreateRequest(BaseModel):
    """Subscribe a user to a plan."""

    model_config = ConfigDict(str_strip_whitespace=True)

    user_id: str = Field(min_length=1)
    plan_id: str = Field(min_length=1)
    billing_period: BillingPeriod = BillingPeriod.MONTHLY
    currency: str = Field(min_length=3, max_length=3)
    coupon_code: str | None = None
    auto_renew: bool = True
    metadata: dict[str, Any] = Field(default_factory=dict)


class ProrationResult(BaseModel):
    """Credit for unused time and the resulting charge for a new plan."""

    unused_fraction: Decimal
    credit: Decimal
    new_price: Decimal
    new_charge: Decimal
    remainder: Decimal = Decimal("0")


class PlanChangeResult(BaseModel):
    """Outcome of an immediate plan change."""

    subscription: Subscription
    proration: ProrationResult
    charged_amount: Decimal
    formatted_charge: str


class RefundQuote(BaseModel):
    """Refund owed for a subscription; informational, no money moves."""

    subscription_id: str
    refund_type: RefundType
    amount: Decimal
    currency: str
    formatted_amount: str
    unused_fraction: Decimal | None = None


class SweepReport(BaseModel):
    """Summary of one sweep over due subscriptions."""

    examined: int = 0
    advanced: int = 0
    unchanged: int = 0
    failed: int = 0
    failed_ids: list[str] = Field(default_factory=list)
