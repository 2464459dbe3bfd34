"""
Pricing engine database tables.

One table per aggregate; cross-aggregate references are plain id columns
(no foreign keys or relationships) so each aggregate type can be stored and
sharded independently.
"""

from datetime import datetime
from decimal import Decimal
from typing import Any
from uuid import uuid4

from sqlalchemy import (
    JSON,
    Boolean,
    CheckConstraint,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column

from modula.platform.db import Base, TimestampMixin, UTCDateTime

AMOUNT = Numeric(18, 4)


def generate_id(prefix: str) -> str:
    """Prefixed random identifier, e.g. ``plan_3f2a...``."""
    return f"{prefix}_{uuid4().hex}"


class PricingSQLModel(Base, TimestampMixin):
    """Base SQLAlchemy model for pricing tables."""

    __abstract__ = True


# ============================================================================
# Catalog
# ============================================================================


class PlanTable(PricingSQLModel):
    """Sellable plan definition."""

    __tablename__ = "pricing_plans"

    plan_id: Mapped[str] = mapped_column(
        String(50), primary_key=True, default=lambda: generate_id("plan")
    )
    slug: Mapped[str] = mapped_column(String(50), nullable=False, unique=True)
    kind: Mapped[str] = mapped_column(String(20), nullable=False, default="subscription")
    trial_days: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    status: Mapped[str] = mapped_column(String(20), nullable=False, default="draft")
    billing_periods: Mapped[list[str]] = mapped_column(JSON, nullable=False, default=list)
    sort_order: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    metadata_json: Mapped[dict[str, Any]] = mapped_column(
        "metadata", JSON, nullable=False, default=dict
    )

    __table_args__ = (
        Index("ix_pricing_plans_status", "status"),
        CheckConstraint("trial_days >= 0", name="ck_pricing_plans_trial_days"),
    )


class PlanFeatureTable(PricingSQLModel):
    """Feature attached to a plan (boolean flag, numeric limit copy or text)."""

    __tablename__ = "pricing_plan_features"

    feature_id: Mapped[str] = mapped_column(
        String(50), primary_key=True, default=lambda: generate_id("feat")
    )
    plan_id: Mapped[str] = mapped_column(String(50), nullable=False)
    feature_key: Mapped[str] = mapped_column(String(50), nullable=False)
    value: Mapped[str | None] = mapped_column(String(255), nullable=True)
    feature_type: Mapped[str] = mapped_column(String(20), nullable=False, default="boolean")
    is_highlighted: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    sort_order: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    __table_args__ = (
        UniqueConstraint("plan_id", "feature_key", name="uq_pricing_plan_features_key"),
    )


class PlanLimitTable(PricingSQLModel):
    """Quota for a metered resource; NULL quota means unlimited."""

    __tablename__ = "pricing_plan_limits"

    limit_id: Mapped[str] = mapped_column(
        String(50), primary_key=True, default=lambda: generate_id("lim")
    )
    plan_id: Mapped[str] = mapped_column(String(50), nullable=False)
    resource: Mapped[str] = mapped_column(String(50), nullable=False)
    quota: Mapped[int | None] = mapped_column(Integer, nullable=True)
    reset_period: Mapped[str] = mapped_column(String(20), nullable=False, default="monthly")
    enforcement: Mapped[str] = mapped_column(String(20), nullable=False, default="advisory")

    __table_args__ = (
        UniqueConstraint("plan_id", "resource", name="uq_pricing_plan_limits_resource"),
        CheckConstraint("quota IS NULL OR quota >= 0", name="ck_pricing_plan_limits_quota"),
    )


class PricePointTable(PricingSQLModel):
    """Currency- and period-specific price, optionally bounded in time."""

    __tablename__ = "pricing_price_points"

    price_point_id: Mapped[str] = mapped_column(
        String(50), primary_key=True, default=lambda: generate_id("price")
    )
    plan_id: Mapped[str] = mapped_column(String(50), nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False)
    billing_period: Mapped[str] = mapped_column(String(20), nullable=False)
    amount: Mapped[Decimal] = mapped_column(AMOUNT, nullable=False)
    compare_at_amount: Mapped[Decimal | None] = mapped_column(AMOUNT, nullable=True)
    setup_fee: Mapped[Decimal | None] = mapped_column(AMOUNT, nullable=True)
    effective_from: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    effective_until: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)

    __table_args__ = (
        Index("ix_pricing_price_points_key", "plan_id", "currency", "billing_period"),
        CheckConstraint("amount >= 0", name="ck_pricing_price_points_amount"),
    )


# ============================================================================
# Coupons
# ============================================================================


class CouponTable(PricingSQLModel):
    """Discount code with global and per-user caps."""

    __tablename__ = "pricing_coupons"

    coupon_id: Mapped[str] = mapped_column(
        String(50), primary_key=True, default=lambda: generate_id("cpn")
    )
    code: Mapped[str] = mapped_column(String(50), nullable=False, unique=True)
    discount_type: Mapped[str] = mapped_column(String(20), nullable=False)
    discount_value: Mapped[Decimal] = mapped_column(AMOUNT, nullable=False)
    applies_to_plans: Mapped[list[str] | None] = mapped_column(JSON, nullable=True)
    applies_to_periods: Mapped[list[str] | None] = mapped_column(JSON, nullable=True)
    usage_limit: Mapped[int | None] = mapped_column(Integer, nullable=True)
    per_user_limit: Mapped[int | None] = mapped_column(Integer, nullable=True)
    used_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    starts_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    expires_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    first_payment_only: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    metadata_json: Mapped[dict[str, Any]] = mapped_column(
        "metadata", JSON, nullable=False, default=dict
    )

    __table_args__ = (
        Index("ix_pricing_coupons_active", "is_active"),
        CheckConstraint(
            "usage_limit IS NULL OR used_count <= usage_limit",
            name="ck_pricing_coupons_used_count_cap",
        ),
        CheckConstraint("used_count >= 0", name="ck_pricing_coupons_used_count"),
    )


class CouponRedemptionTable(PricingSQLModel):
    """Immutable record of one coupon use."""

    __tablename__ = "pricing_coupon_redemptions"

    redemption_id: Mapped[str] = mapped_column(
        String(50), primary_key=True, default=lambda: generate_id("rdm")
    )
    coupon_id: Mapped[str] = mapped_column(String(50), nullable=False)
    user_id: Mapped[str] = mapped_column(String(255), nullable=False)
    subscription_id: Mapped[str | None] = mapped_column(String(50), nullable=True)
    redeemed_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)

    __table_args__ = (Index("ix_pricing_coupon_redemptions_user", "coupon_id", "user_id"),)


# ============================================================================
# Subscriptions
# ============================================================================


class SubscriptionTable(PricingSQLModel):
    """Subscription aggregate, protected by an optimistic version counter."""

    __tablename__ = "pricing_subscriptions"

    subscription_id: Mapped[str] = mapped_column(
        String(50), primary_key=True, default=lambda: generate_id("sub")
    )
    user_id: Mapped[str] = mapped_column(String(255), nullable=False)
    plan_id: Mapped[str] = mapped_column(String(50), nullable=False)
    billing_period: Mapped[str] = mapped_column(String(20), nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False)
    status: Mapped[str] = mapped_column(String(20), nullable=False, default="pending")

    # Price locked at creation / last renewal
    price_point_id: Mapped[str] = mapped_column(String(50), nullable=False)
    unit_amount: Mapped[Decimal] = mapped_column(AMOUNT, nullable=False)

    # Periods
    trial_ends_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    current_period_start: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)
    current_period_end: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)
    period_sequence: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    # Renewal period ends are stepped from this instant
    billing_anchor_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    auto_renew: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)

    # Cancellation
    cancel_at_period_end: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    cancel_reason: Mapped[str | None] = mapped_column(String(255), nullable=True)
    cancelled_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    ended_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)

    # Pause
    paused_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    resume_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)

    # Scheduled plan change
    pending_plan_id: Mapped[str | None] = mapped_column(String(50), nullable=True)
    pending_effective_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)

    # Coupon discount snapshot
    coupon_id: Mapped[str | None] = mapped_column(String(50), nullable=True)
    discount_type: Mapped[str | None] = mapped_column(String(20), nullable=True)
    discount_value: Mapped[Decimal | None] = mapped_column(AMOUNT, nullable=True)
    discount_recurring: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    # Carried proration remainder (carry_forward policy only)
    account_credit: Mapped[Decimal] = mapped_column(AMOUNT, nullable=False, default=Decimal("0"))

    metadata_json: Mapped[dict[str, Any]] = mapped_column(
        "metadata", JSON, nullable=False, default=dict
    )
    version: Mapped[int] = mapped_column(Integer, nullable=False)

    __mapper_args__ = {"version_id_col": version}

    __table_args__ = (
        Index("ix_pricing_subscriptions_user_status", "user_id", "status"),
        Index("ix_pricing_subscriptions_period_end", "status", "current_period_end"),
        Index("ix_pricing_subscriptions_plan", "plan_id"),
    )


# ============================================================================
# Usage
# ============================================================================


class UsageRecordTable(PricingSQLModel):
    """Append-only usage fact for one billing period."""

    __tablename__ = "pricing_usage_records"

    record_id: Mapped[str] = mapped_column(
        String(50), primary_key=True, default=lambda: generate_id("use")
    )
    subscription_id: Mapped[str] = mapped_column(String(50), nullable=False)
    resource: Mapped[str] = mapped_column(String(50), nullable=False)
    quantity: Mapped[int] = mapped_column(Integer, nullable=False)
    period_start: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)
    period_end: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)
    period_sequence: Mapped[int] = mapped_column(Integer, nullable=False)
    recorded_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)

    __table_args__ = (
        Index(
            "ix_pricing_usage_records_period",
            "subscription_id",
            "resource",
            "period_sequence",
        ),
        CheckConstraint("quantity >= 0", name="ck_pricing_usage_records_quantity"),
    )


class UsageCounterTable(PricingSQLModel):
    """Atomic running total used to enforce hard quotas."""

    __tablename__ = "pricing_usage_counters"

    counter_id: Mapped[str] = mapped_column(
        String(50), primary_key=True, default=lambda: generate_id("ctr")
    )
    subscription_id: Mapped[str] = mapped_column(String(50), nullable=False)
    resource: Mapped[str] = mapped_column(String(50), nullable=False)
    period_sequence: Mapped[int] = mapped_column(Integer, nullable=False)
    used: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    __table_args__ = (
        UniqueConstraint(
            "subscription_id",
            "resource",
            "period_sequence",
            name="uq_pricing_usage_counters_period",
        ),
    )


# ============================================================================
# Charges (post-transition gateway outcomes)
# ============================================================================


class ChargeTable(PricingSQLModel):
    """Outcome of a charge requested after a committed transition."""

    __tablename__ = "pricing_charges"

    charge_id: Mapped[str] = mapped_column(
        String(50), primary_key=True, default=lambda: generate_id("chg")
    )
    subscription_id: Mapped[str] = mapped_column(String(50), nullable=False)
    amount: Mapped[Decimal] = mapped_column(AMOUNT, nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False)
    reason: Mapped[str] = mapped_column(String(30), nullable=False)
    status: Mapped[str] = mapped_column(String(20), nullable=False)
    receipt_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    attempted_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)

    __table_args__ = (Index("ix_pricing_charges_subscription", "subscription_id", "status"),)


__all__ = [
    "PricingSQLModel",
    "PlanTable",
    "PlanFeatureTable",
    "PlanLimitTable",
    "PricePointTable",
    "CouponTable",
    "CouponRedemptionTable",
    "SubscriptionTable",
    "UsageRecordTable",
    "UsageCounterTable",
    "ChargeTable",
    "generate_id",
]
