"""
Pricing event types and event emission helpers.

Events are published only after the state change they describe has been
committed, so subscribers never observe a transition that was rolled back.
"""

from decimal import Decimal
from typing import TYPE_CHECKING, Any, Optional

import structlog

from modula.platform.events import EventPriority, get_event_bus

if TYPE_CHECKING:
    from modula.platform.events import EventBus

logger = structlog.get_logger(__name__)


# ============================================================================
# Pricing Event Types
# ============================================================================


class PricingEvents:
    """Pricing event type constants."""

    # Subscription lifecycle
    SUBSCRIPTION_CREATED = "subscription.created"
    SUBSCRIPTION_TRIAL_ENDED = "subscription.trial_ended"
    SUBSCRIPTION_RENEWED = "subscription.renewed"
    SUBSCRIPTION_PLAN_CHANGED = "subscription.plan_changed"
    SUBSCRIPTION_DOWNGRADE_SCHEDULED = "subscription.downgrade_scheduled"
    SUBSCRIPTION_SCHEDULED_CHANGE_CANCELLED = "subscription.scheduled_change_cancelled"
    SUBSCRIPTION_SCHEDULED_CHANGE_FAILED = "subscription.scheduled_change_failed"
    SUBSCRIPTION_PAUSED = "subscription.paused"
    SUBSCRIPTION_RESUMED = "subscription.resumed"
    SUBSCRIPTION_CANCEL_SCHEDULED = "subscription.cancel_scheduled"
    SUBSCRIPTION_REACTIVATED = "subscription.reactivated"
    SUBSCRIPTION_CANCELLED = "subscription.cancelled"
    SUBSCRIPTION_EXPIRED = "subscription.expired"
    SUBSCRIPTION_PAST_DUE = "subscription.past_due"
    SUBSCRIPTION_RECOVERED = "subscription.recovered"
    SUBSCRIPTION_EXTENDED = "subscription.extended"
    SUBSCRIPTION_PRICE_MIGRATED = "subscription.price_migrated"

    # Coupons
    COUPON_REDEEMED = "coupon.redeemed"

    # Usage
    USAGE_QUOTA_EXCEEDED = "usage.quota_exceeded"

    # Charges requested from the payment gateway
    CHARGE_SUCCEEDED = "payment.charge_succeeded"
    CHARGE_FAILED = "payment.charge_failed"


_HIGH_PRIORITY = {
    PricingEvents.SUBSCRIPTION_CANCELLED,
    PricingEvents.SUBSCRIPTION_EXPIRED,
    PricingEvents.SUBSCRIPTION_PAST_DUE,
    PricingEvents.CHARGE_FAILED,
}


# ============================================================================
# Event Emission Helpers
# ============================================================================


async def emit_subscription_event(
    event_type: str,
    subscription_id: str,
    user_id: str,
    event_bus: Optional["EventBus"] = None,
    **extra_data: Any,
) -> None:
    """
    Emit a subscription lifecycle event.

    Args:
        event_type: One of the ``PricingEvents.SUBSCRIPTION_*`` constants
        subscription_id: Subscription ID
        user_id: Subscriber
        event_bus: Event bus instance (optional, defaults to the global bus)
        **extra_data: Additional event data
    """
    if event_bus is None:
        event_bus = get_event_bus()

    await event_bus.publish(
        event_type=event_type,
        payload={"subscription_id": subscription_id, "user_id": user_id, **extra_data},
        metadata={"user_id": user_id, "source": "pricing"},
        priority=EventPriority.HIGH if event_type in _HIGH_PRIORITY else EventPriority.NORMAL,
    )

    logger.info(
        "Subscription event emitted",
        event_type=event_type,
        subscription_id=subscription_id,
    )


async def emit_coupon_redeemed(
    coupon_id: str,
    code: str,
    user_id: str,
    subscription_id: str | None,
    event_bus: Optional["EventBus"] = None,
) -> None:
    """Emit coupon redeemed event."""
    if event_bus is None:
        event_bus = get_event_bus()

    await event_bus.publish(
        event_type=PricingEvents.COUPON_REDEEMED,
        payload={
            "coupon_id": coupon_id,
            "code": code,
            "user_id": user_id,
            "subscription_id": subscription_id,
        },
        metadata={"user_id": user_id, "source": "pricing"},
    )

    logger.info("Coupon redeemed event emitted", coupon_code=code, user_id=user_id)


async def emit_quota_exceeded(
    subscription_id: str,
    resource: str,
    requested: int,
    remaining: int,
    event_bus: Optional["EventBus"] = None,
) -> None:
    """Emit usage quota exceeded event."""
    if event_bus is None:
        event_bus = get_event_bus()

    await event_bus.publish(
        event_type=PricingEvents.USAGE_QUOTA_EXCEEDED,
        payload={
            "subscription_id": subscription_id,
            "resource": resource,
            "requested": requested,
            "remaining": remaining,
        },
        metadata={"source": "pricing"},
    )


async def emit_charge_outcome(
    subscription_id: str,
    amount: Decimal,
    currency: str,
    reason: str,
    succeeded: bool,
    receipt_id: str | None = None,
    error: str | None = None,
    event_bus: Optional["EventBus"] = None,
) -> None:
    """
    Emit the result of a gateway charge.

    Args:
        subscription_id: Subscription that was charged
        amount: Amount requested
        currency: Currency code
        reason: Why the charge was requested (initial, renewal, ...)
        succeeded: Whether the gateway accepted the charge
        receipt_id: Gateway receipt on success
        error: Gateway error message on failure
        event_bus: Event bus instance (optional, defaults to the global bus)
    """
    if event_bus is None:
        event_bus = get_event_bus()

    event_type = PricingEvents.CHARGE_SUCCEEDED if succeeded else PricingEvents.CHARGE_FAILED
    await event_bus.publish(
        event_type=event_type,
        payload={
            "subscription_id": subscription_id,
            "amount": str(amount),
            "currency": currency,
            "reason": reason,
            "receipt_id": receipt_id,
            "error": error,
        },
        metadata={"source": "pricing"},
        priority=EventPriority.HIGH if event_type in _HIGH_PRIORITY else EventPriority.NORMAL,
    )
