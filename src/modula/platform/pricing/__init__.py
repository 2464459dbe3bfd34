"""
Pricing and subscription engine.

Four cooperating services share one database session:

- ``PriceCatalogService``: plans, features, limits and time-windowed prices
- ``CouponService``: coupon validation, bounded redemption and discounts
- ``UsageMeterService``: per-period usage recording and quota checks
- ``SubscriptionService``: the subscription state machine with proration

``advance_due_subscriptions`` runs the period sweep across subscriptions.
"""

from modula.platform.pricing.catalog import (
    FeatureType,
    LimitEnforcement,
    Plan,
    PlanCreateRequest,
    PlanFeature,
    PlanKind,
    PlanLimit,
    PlanStatus,
    PriceCatalogService,
    PricePoint,
)
from modula.platform.pricing.config import (
    PricingConfig,
    ProrationRemainderPolicy,
    get_pricing_config,
    set_pricing_config,
)
from modula.platform.pricing.coupons import (
    Coupon,
    CouponCreateRequest,
    CouponInvalidReason,
    CouponService,
    CouponValidationResult,
    DiscountType,
)
from modula.platform.pricing.exceptions import (
    AmbiguousPriceError,
    ConcurrencyConflictError,
    CouponInvalidError,
    InvalidTransitionError,
    InvalidUsageError,
    NotFoundError,
    PricingEngineError,
    QuotaExceededError,
)
from modula.platform.pricing.gateway import (
    Charge,
    ChargeDispatcher,
    ChargeReason,
    ChargeReceipt,
    ChargeStatus,
    PaymentGateway,
)
from modula.platform.pricing.periods import BillingPeriod
from modula.platform.pricing.subscriptions import (
    PlanChangeResult,
    ProrationResult,
    RefundQuote,
    RefundType,
    Subscription,
    SubscriptionCreateRequest,
    SubscriptionService,
    SubscriptionStatus,
    SweepReport,
    advance_due_subscriptions,
    calculate_proration,
)
from modula.platform.pricing.usage import QuotaCheckResult, UsageMeterService, UsageSummary

__all__ = [
    # Catalog
    "BillingPeriod",
    "FeatureType",
    "LimitEnforcement",
    "Plan",
    "PlanCreateRequest",
    "PlanFeature",
    "PlanKind",
    "PlanLimit",
    "PlanStatus",
    "PriceCatalogService",
    "PricePoint",
    # Coupons
    "Coupon",
    "CouponCreateRequest",
    "CouponInvalidReason",
    "CouponService",
    "CouponValidationResult",
    "DiscountType",
    # Usage
    "QuotaCheckResult",
    "UsageMeterService",
    "UsageSummary",
    # Subscriptions
    "PlanChangeResult",
    "ProrationResult",
    "RefundQuote",
    "RefundType",
    "Subscription",
    "SubscriptionCreateRequest",
    "SubscriptionService",
    "SubscriptionStatus",
    "SweepReport",
    "advance_due_subscriptions",
    "calculate_proration",
    # Payments
    "Charge",
    "ChargeDispatcher",
    "ChargeReason",
    "ChargeReceipt",
    "ChargeStatus",
    "PaymentGateway",
    # Configuration
    "PricingConfig",
    "ProrationRemainderPolicy",
    "get_pricing_config",
    "set_pricing_config",
    # Errors
    "AmbiguousPriceError",
    "ConcurrencyConflictError",
    "CouponInvalidError",
    "InvalidTransitionError",
    "InvalidUsageError",
    "NotFoundError",
    "PricingEngineError",
    "QuotaExceededError",
]
