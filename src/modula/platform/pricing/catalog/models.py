"""
Plan catalog models.

Pydantic domain models returned by the catalog service, plus request
models for catalog management operations.
"""

from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Any

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator

from modula.platform.pricing.periods import BillingPeriod


class PlanKind(str, Enum):
    """What a plan sells."""

    SUBSCRIPTION = "subscription"
    ONE_TIME = "one_time"
    USAGE_BASED = "usage_based"


class PlanStatus(str, Enum):
    """Plan lifecycle status."""

    DRAFT = "draft"
    ACTIVE = "active"
    ARCHIVED = "archived"


class FeatureType(str, Enum):
    """How a plan feature value is interpreted."""

    BOOLEAN = "boolean"
    LIMIT = "limit"
    TEXT = "text"


class LimitEnforcement(str, Enum):
    """How strictly a quota is enforced when usage is recorded."""

    ADVISORY = "advisory"
    HARD = "hard"


class Plan(BaseModel):
    """Plan definition."""

    model_config = ConfigDict(from_attributes=True)

    plan_id: str
    slug: str
    kind: PlanKind
    trial_days: int = 0
    status: PlanStatus
    billing_periods: list[BillingPeriod]
    sort_order: int = 0
    metadata: dict[str, Any] = Field(
        default_factory=dict, validation_alias=AliasChoices("metadata_json", "metadata")
    )
    created_at: datetime | None = None

    @property
    def is_selectable(self) -> bool:
        """Only active plans can be chosen for new subscriptions."""
        return self.status == PlanStatus.ACTIVE

    def offers(self, billing_period: BillingPeriod | str) -> bool:
        return BillingPeriod(billing_period) in self.billing_periods


class PlanFeature(BaseModel):
    """Feature attached to a plan."""

    model_config = ConfigDict(from_attributes=True)

    feature_id: str
    plan_id: str
    feature_key: str
    value: str | None = None
    feature_type: FeatureType = FeatureType.BOOLEAN
    is_highlighted: bool = False
    sort_order: int = 0


class PlanLimit(BaseModel):
    """Quota on a metered resource. ``quota=None`` means unlimited."""

    model_config = ConfigDict(from_attributes=True)

    plan_id: str
    resource: str
    quota: int | None = None
    reset_period: BillingPeriod = BillingPeriod.MONTHLY
    enforcement: LimitEnforcement = LimitEnforcement.ADVISORY

    @property
    def is_unlimited(self) -> bool:
        return self.quota is None


class PricePoint(BaseModel):
    """Time-bounded, currency-specific price for a plan and billing period."""

    model_config = ConfigDict(from_attributes=True)

    price_point_id: str
    plan_id: str
    currency: str
    billing_period: BillingPeriod
    amount: Decimal
    compare_at_amount: Decimal | None = None
    setup_fee: Decimal | None = None
    effective_from: datetime | None = None
    effective_until: datetime | None = None

    @property
    def is_unbounded(self) -> bool:
        return self.effective_from is None and self.effective_until is None

    def is_active_at(self, at: datetime) -> bool:
        """Half-open window check: ``effective_from <= at < effective_until``."""
        if self.effective_from is not None and at < self.effective_from:
            return False
        if self.effective_until is not None and at >= self.effective_until:
            return False
        return True

    @property
    def is_on_sale(self) -> bool:
        return self.compare_at_amount is not None and self.compare_at_amount > self.amount

    @property
    def discount_percentage(self) -> int | None:
        """Whole-percent saving against the compare-at amount."""
        if not self.is_on_sale or self.compare_at_amount is None:
            return None
        saving = (self.compare_at_amount - self.amount) / self.compare_at_amount * 100
        return int(saving.quantize(Decimal("1"), rounding="ROUND_HALF_UP"))


# ============================================================================
# Requests
# ============================================================================


class PlanFeatureInput(BaseModel):
    """Feature supplied when creating a plan."""

    key: str = Field(min_length=1, max_length=50)
    value: str | None = None
    feature_type: FeatureType = FeatureType.BOOLEAN
    is_highlighted: bool = False


class PlanLimitInput(BaseModel):
    """Limit supplied when creating a plan."""

    quota: int | None = Field(None, ge=0)
    reset_period: BillingPeriod = BillingPeriod.MONTHLY
    enforcement: LimitEnforcement = LimitEnforcement.ADVISORY


class PlanCreateRequest(BaseModel):
    """Create a draft plan."""

    model_config = ConfigDict(str_strip_whitespace=True)

    slug: str = Field(min_length=1, max_length=50, pattern=r"^[a-z0-9][a-z0-9_-]*$")
    kind: PlanKind = PlanKind.SUBSCRIPTION
    trial_days: int = Field(0, ge=0)
    billing_periods: list[BillingPeriod] = Field(
        default_factory=lambda: [BillingPeriod.MONTHLY], min_length=1
    )
    sort_order: int = 0
    features: list[PlanFeatureInput] = Field(default_factory=list)
    limits: dict[str, PlanLimitInput] = Field(default_factory=dict)
    metadata: dict[str, Any] = Field(default_factory=dict)

    @field_validator("billing_periods")
    @classmethod
    def unique_periods(cls, v: list[BillingPeriod]) -> list[BillingPeriod]:
        """Keep the caller's order, drop duplicates."""
        return list(dict.fromkeys(v))


class PlanComparison(BaseModel):
    """Feature matrix across plans; ``-`` where a plan lacks a feature."""

    plans: list[Plan]
    features_matrix: dict[str, dict[str, str]]


# ============================================================================
# Analytics
# ============================================================================


class PlanAnalytics(BaseModel):
    """
    Subscriber counts and recurring revenue for one plan.

    Revenue is kept per currency; it is never converted.
    """

    plan_id: str
    at: datetime
    total_subscribers: int = 0
    active_subscribers: int = 0
    churned_last_30_days: int = 0
    mrr: dict[str, Decimal] = Field(default_factory=dict)
    arr: dict[str, Decimal] = Field(default_factory=dict)


# ============================================================================
# Export / import
# ============================================================================


class ImportMode(str, Enum):
    """How plans whose slug already exists are handled on import."""

    MERGE = "merge"  # keep the existing plan
    REPLACE = "replace"  # overwrite it


class PricePointInput(BaseModel):
    """Price point carried in a plan export."""

    currency: str = Field(min_length=3, max_length=3)
    billing_period: BillingPeriod
    amount: Decimal = Field(ge=0)
    compare_at_amount: Decimal | None = Field(None, ge=0)
    setup_fee: Decimal | None = Field(None, ge=0)
    effective_from: datetime | None = None
    effective_until: datetime | None = None


class PlanExport(BaseModel):
    """Portable plan definition, matched by slug on import."""

    model_config = ConfigDict(str_strip_whitespace=True)

    slug: str = Field(min_length=1, max_length=50, pattern=r"^[a-z0-9][a-z0-9_-]*$")
    kind: PlanKind = PlanKind.SUBSCRIPTION
    status: PlanStatus = PlanStatus.DRAFT
    trial_days: int = Field(0, ge=0)
    billing_periods: list[BillingPeriod] = Field(
        default_factory=lambda: [BillingPeriod.MONTHLY], min_length=1
    )
    sort_order: int = 0
    metadata: dict[str, Any] = Field(default_factory=dict)
    features: list[PlanFeatureInput] = Field(default_factory=list)
    limits: dict[str, PlanLimitInput] = Field(default_factory=dict)
    prices: list[PricePointInput] = Field(default_factory=list)


class PlanImportError(BaseModel):
    slug: str
    error_code: str
    message: str


class PlanImportResult(BaseModel):
    """Per-plan outcome counts of an import."""

    created: int = 0
    updated: int = 0
    skipped: int = 0
    errors: list[PlanImportError] = Field(default_factory=list)
