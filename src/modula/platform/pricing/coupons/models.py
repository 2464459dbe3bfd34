"""
Coupon models.
"""

from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Any

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator, model_validator

from modula.platform.pricing.periods import BillingPeriod


class DiscountType(str, Enum):
    """How a coupon value is applied."""

    PERCENTAGE = "percentage"
    FIXED_AMOUNT = "fixed_amount"


class CouponInvalidReason(str, Enum):
    """Stable reasons a coupon cannot be used, in evaluation order."""

    NOT_FOUND = "not-found"
    INACTIVE = "inactive"
    NOT_YET_VALID = "not-yet-valid"
    EXPIRED = "expired"
    EXHAUSTED = "exhausted"
    NOT_APPLICABLE_TO_PLAN = "not-applicable-to-plan"
    USER_LIMIT_REACHED = "user-limit-reached"


def normalize_code(code: str) -> str:
    """Coupon codes are case-insensitive and stored upper-cased."""
    return code.strip().upper()


class Coupon(BaseModel):
    """Coupon definition."""

    model_config = ConfigDict(from_attributes=True)

    coupon_id: str
    code: str
    discount_type: DiscountType
    discount_value: Decimal
    applies_to_plans: list[str] | None = None
    applies_to_periods: list[BillingPeriod] | None = None
    usage_limit: int | None = None
    per_user_limit: int | None = None
    used_count: int = 0
    starts_at: datetime | None = None
    expires_at: datetime | None = None
    first_payment_only: bool = True
    is_active: bool = True
    metadata: dict[str, Any] = Field(
        default_factory=dict, validation_alias=AliasChoices("metadata_json", "metadata")
    )

    @property
    def remaining_uses(self) -> int | None:
        if self.usage_limit is None:
            return None
        return max(0, self.usage_limit - self.used_count)

    def applies_to(self, plan_id: str | None, billing_period: BillingPeriod | str | None) -> bool:
        """Empty restriction lists mean the coupon applies everywhere."""
        if self.applies_to_plans and plan_id not in self.applies_to_plans:
            return False
        if self.applies_to_periods:
            if billing_period is None:
                return False
            return BillingPeriod(billing_period) in self.applies_to_periods
        return True


class CouponCreateRequest(BaseModel):
    """Create a coupon."""

    model_config = ConfigDict(str_strip_whitespace=True)

    code: str = Field(min_length=1, max_length=50)
    discount_type: DiscountType
    discount_value: Decimal = Field(gt=0)
    applies_to_plans: list[str] | None = None
    applies_to_periods: list[BillingPeriod] | None = None
    usage_limit: int | None = Field(None, ge=0)
    per_user_limit: int | None = Field(None, ge=0)
    starts_at: datetime | None = None
    expires_at: datetime | None = None
    first_payment_only: bool = True
    is_active: bool = True
    metadata: dict[str, Any] = Field(default_factory=dict)

    @field_validator("code")
    @classmethod
    def upper_code(cls, v: str) -> str:
        return normalize_code(v)

    @model_validator(mode="after")
    def validate_discount(self) -> "CouponCreateRequest":
        if self.discount_type == DiscountType.PERCENTAGE and self.discount_value > 100:
            raise ValueError("Percentage discount cannot exceed 100")
        if self.starts_at and self.expires_at and self.expires_at <= self.starts_at:
            raise ValueError("expires_at must be after starts_at")
        return self


class CouponValidationResult(BaseModel):
    """Outcome of validating a coupon; ``reason`` is the first failing check."""

    valid: bool
    reason: CouponInvalidReason | None = None
    discount_type: DiscountType | None = None
    discount_value: Decimal | None = None
    coupon: Coupon | None = None

    @classmethod
    def ok(cls, coupon: Coupon) -> "CouponValidationResult":
        return cls(
            valid=True,
            discount_type=coupon.discount_type,
            discount_value=coupon.discount_value,
            coupon=coupon,
        )

    @classmethod
    def fail(
        cls, reason: CouponInvalidReason, coupon: Coupon | None = None
    ) -> "CouponValidationResult":
        return cls(valid=False, reason=reason, coupon=coupon)


class CouponRedemption(BaseModel):
    """Immutable record of a coupon use."""

    model_config = ConfigDict(from_attributes=True)

    redemption_id: str
    coupon_id: str
    user_id: str
    subscription_id: str | None = None
    redeemed_at: datetime
