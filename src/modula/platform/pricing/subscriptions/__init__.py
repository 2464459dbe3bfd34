"""
Subscription lifecycle.
"""

from modula.platform.pricing.subscriptions.models import (
    PlanChangeResult,
    ProrationResult,
    RefundQuote,
    RefundType,
    Subscription,
    SubscriptionCreateRequest,
    SubscriptionStatus,
    SweepReport,
)
from modula.platform.pricing.subscriptions.proration import calculate_proration, unused_fraction
from modula.platform.pricing.subscriptions.service import SubscriptionService
from modula.platform.pricing.subscriptions.sweep import (
    advance_due_subscriptions,
    find_due_subscription_ids,
)

__all__ = [
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
    "find_due_subscription_ids",
    "unused_fraction",
]
