"""
Pricing engine exceptions.

Every failure kind carries a stable machine-readable error code so the
calling layer can render specific messaging, plus status code, context and
a recovery hint.
"""

from typing import Any


class PricingEngineError(Exception):
    """
    Base pricing engine error with enhanced context.

    Attributes:
        message: Human-readable error message
        error_code: Machine-readable error code for API responses
        status_code: HTTP status code for this error type
        context: Additional context data about the error
        recovery_hint: Suggested action to resolve the error
        retryable: Whether the caller may safely retry the operation
    """

    retryable: bool = False

    def __init__(
        self,
        message: str,
        error_code: str | None = None,
        status_code: int = 400,
        context: dict[str, Any] | None = None,
        recovery_hint: str | None = None,
    ):
        self.message = message
        self.error_code = error_code or "PRICING_ERROR"
        self.status_code = status_code
        self.context = context or {}
        self.recovery_hint = recovery_hint
        super().__init__(self.message)

    def to_dict(self) -> dict[str, Any]:
        """Convert error to dictionary for API responses."""
        return {
            "error_code": self.error_code,
            "message": self.message,
            "status_code": self.status_code,
            "context": self.context,
            "recovery_hint": self.recovery_hint,
            "retryable": self.retryable,
        }


# ============================================================================
# Not found
# ============================================================================


class NotFoundError(PricingEngineError):
    """Unknown plan, price, coupon or subscription."""

    def __init__(
        self,
        message: str,
        error_code: str = "NOT_FOUND",
        context: dict[str, Any] | None = None,
        recovery_hint: str | None = None,
    ):
        super().__init__(
            message, error_code, status_code=404, context=context, recovery_hint=recovery_hint
        )


class PlanNotFoundError(NotFoundError):
    """Plan not found error."""

    def __init__(self, message: str, plan_id: str | None = None, slug: str | None = None) -> None:
        context = {}
        if plan_id:
            context["plan_id"] = plan_id
        if slug:
            context["slug"] = slug

        super().__init__(
            message,
            "PLAN_NOT_FOUND",
            context=context,
            recovery_hint="Verify the plan ID or slug and ensure the plan exists",
        )


class PriceNotFoundError(NotFoundError):
    """No price point is active for the requested key and instant."""

    def __init__(self, message: str, plan_id: str, currency: str, billing_period: str) -> None:
        super().__init__(
            message,
            "PRICE_NOT_FOUND",
            context={"plan_id": plan_id, "currency": currency, "billing_period": billing_period},
            recovery_hint="Schedule a price for this plan, currency and billing period",
        )


class PricePointNotFoundError(NotFoundError):
    """Price point id does not exist."""

    def __init__(self, message: str, price_point_id: str) -> None:
        super().__init__(
            message,
            "PRICE_POINT_NOT_FOUND",
            context={"price_point_id": price_point_id},
            recovery_hint="Verify the price point ID",
        )


class CouponNotFoundError(NotFoundError):
    """Coupon not found error."""

    def __init__(self, message: str, code: str | None = None, coupon_id: str | None = None) -> None:
        context = {}
        if code:
            context["code"] = code
        if coupon_id:
            context["coupon_id"] = coupon_id

        super().__init__(
            message,
            "COUPON_NOT_FOUND",
            context=context,
            recovery_hint="Verify the coupon code",
        )


class SubscriptionNotFoundError(NotFoundError):
    """Subscription not found error."""

    def __init__(self, message: str, subscription_id: str | None = None) -> None:
        context = {}
        if subscription_id:
            context["subscription_id"] = subscription_id

        super().__init__(
            message,
            "SUBSCRIPTION_NOT_FOUND",
            context=context,
            recovery_hint="Verify the subscription ID and ensure it exists",
        )


# ============================================================================
# Catalog configuration
# ============================================================================


class DuplicatePlanError(PricingEngineError):
    """Plan slug already in use."""

    def __init__(self, message: str, slug: str) -> None:
        super().__init__(
            message,
            "DUPLICATE_PLAN",
            status_code=409,
            context={"slug": slug},
            recovery_hint="Use a unique slug for the plan",
        )


class DuplicateCouponError(PricingEngineError):
    """Coupon code already in use."""

    def __init__(self, message: str, code: str) -> None:
        super().__init__(
            message,
            "DUPLICATE_COUPON",
            status_code=409,
            context={"code": code},
            recovery_hint="Use a unique coupon code",
        )


class AmbiguousPriceError(PricingEngineError):
    """More than one price point matches; a catalog configuration defect."""

    def __init__(
        self,
        message: str,
        plan_id: str,
        currency: str,
        billing_period: str,
        price_point_ids: list[str],
    ) -> None:
        super().__init__(
            message,
            "AMBIGUOUS_PRICE",
            status_code=500,
            context={
                "plan_id": plan_id,
                "currency": currency,
                "billing_period": billing_period,
                "price_point_ids": price_point_ids,
            },
            recovery_hint="End or remove the duplicate price points so exactly one applies",
        )


class PriceWindowOverlapError(PricingEngineError):
    """A new price window overlaps an existing one for the same key."""

    def __init__(self, message: str, conflicting_price_point_id: str) -> None:
        super().__init__(
            message,
            "PRICE_WINDOW_OVERLAP",
            status_code=409,
            context={"conflicting_price_point_id": conflicting_price_point_id},
            recovery_hint="End the existing price window first, then schedule the new one",
        )


class InvalidPriceError(PricingEngineError):
    """Price amount or window is malformed."""

    def __init__(
        self,
        message: str,
        price_point_id: str | None = None,
        validation_errors: dict[str, Any] | None = None,
    ) -> None:
        context: dict[str, Any] = {}
        if price_point_id:
            context["price_point_id"] = price_point_id
        if validation_errors:
            context["validation_errors"] = validation_errors

        super().__init__(
            message,
            "INVALID_PRICE",
            status_code=400,
            context=context,
            recovery_hint="Use a non-negative amount and a window whose end is after its start",
        )


class PlanNotSelectableError(PricingEngineError):
    """Plan is draft/archived, or the billing period is not offered."""

    def __init__(self, message: str, plan_id: str, reason: str) -> None:
        super().__init__(
            message,
            "PLAN_NOT_SELECTABLE",
            status_code=409,
            context={"plan_id": plan_id, "reason": reason},
            recovery_hint="Choose an active plan and one of its billing periods",
        )


class UnsupportedCurrencyError(PricingEngineError):
    """Currency is unknown to the currency collaborator."""

    def __init__(self, message: str, currency: str) -> None:
        super().__init__(
            message,
            "UNSUPPORTED_CURRENCY",
            status_code=400,
            context={"currency": currency},
            recovery_hint="Use a supported ISO 4217 currency code",
        )


# ============================================================================
# Lifecycle
# ============================================================================


class InvalidTransitionError(PricingEngineError):
    """State machine precondition violated."""

    def __init__(self, message: str, current_state: str, operation: str) -> None:
        super().__init__(
            message,
            "INVALID_TRANSITION",
            status_code=409,
            context={"current_state": current_state, "operation": operation},
            recovery_hint=f"Cannot {operation} a subscription in state {current_state}",
        )


class InvalidRefundError(PricingEngineError):
    """Refund quote requested with an unusable amount."""

    def __init__(self, message: str, subscription_id: str, amount: str | None = None) -> None:
        context: dict[str, Any] = {"subscription_id": subscription_id}
        if amount is not None:
            context["amount"] = amount

        super().__init__(
            message,
            "INVALID_REFUND",
            status_code=400,
            context=context,
            recovery_hint="Partial refunds need a positive amount no larger than the period price",
        )


class ConcurrencyConflictError(PricingEngineError):
    """Optimistic-lock retries exhausted; the caller may retry."""

    retryable = True

    def __init__(self, message: str, subscription_id: str, attempts: int) -> None:
        super().__init__(
            message,
            "CONCURRENCY_CONFLICT",
            status_code=409,
            context={"subscription_id": subscription_id, "attempts": attempts},
            recovery_hint="Retry the request",
        )


# ============================================================================
# Coupons
# ============================================================================


class CouponInvalidError(PricingEngineError):
    """Coupon cannot be applied; ``reason`` is the first failing check."""

    def __init__(self, message: str, reason: str, code: str | None = None) -> None:
        context: dict[str, Any] = {"reason": reason}
        if code:
            context["code"] = code

        super().__init__(
            message,
            "COUPON_INVALID",
            status_code=400,
            context=context,
            recovery_hint="Use a different coupon or proceed without one",
        )
        self.reason = reason


# ============================================================================
# Usage
# ============================================================================


class InvalidUsageError(PricingEngineError):
    """Usage cannot be recorded as requested."""

    def __init__(self, message: str, context: dict[str, Any] | None = None) -> None:
        super().__init__(
            message,
            "INVALID_USAGE",
            status_code=400,
            context=context,
            recovery_hint="Record non-negative quantities within the current billing period",
        )


class QuotaExceededError(PricingEngineError):
    """Usage would exceed the plan limit."""

    def __init__(
        self, message: str, resource: str, remaining: int, limit: int, current_usage: int
    ) -> None:
        super().__init__(
            message,
            "QUOTA_EXCEEDED",
            status_code=429,
            context={
                "resource": resource,
                "remaining": remaining,
                "limit": limit,
                "current_usage": current_usage,
            },
            recovery_hint="Upgrade your plan or wait for the next billing period",
        )
        self.remaining = remaining


# ============================================================================
# Collaborators
# ============================================================================


class PaymentGatewayError(PricingEngineError):
    """Raised by payment gateway adapters when a charge fails."""

    retryable = True

    def __init__(self, message: str, context: dict[str, Any] | None = None) -> None:
        super().__init__(
            message,
            "PAYMENT_GATEWAY_ERROR",
            status_code=402,
            context=context,
            recovery_hint="The charge is recorded as failed and will be reconciled",
        )
