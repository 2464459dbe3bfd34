"""
Coupon validation and redemption.

Redemption increments ``used_count`` with a single conditional UPDATE, so
the cap check and the increment are one atomic step on every backend. The
per-user count is taken afterwards, while the transaction holds the coupon
row's write lock, which serialises concurrent redemptions of the same code.
"""

from datetime import datetime
from decimal import Decimal

import structlog
from sqlalchemy import func, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from modula.platform.logging import log_audit_event
from modula.platform.pricing.config import PricingConfig, get_pricing_config
from modula.platform.pricing.coupons.models import (
    Coupon,
    CouponCreateRequest,
    CouponInvalidReason,
    CouponRedemption,
    CouponValidationResult,
    DiscountType,
    normalize_code,
)
from modula.platform.pricing.events import emit_coupon_redeemed
from modula.platform.pricing.exceptions import (
    CouponInvalidError,
    CouponNotFoundError,
    DuplicateCouponError,
    SubscriptionNotFoundError,
)
from modula.platform.pricing.models import CouponRedemptionTable, CouponTable, SubscriptionTable
from modula.platform.pricing.money_utils import (
    ZERO,
    CurrencyService,
    MoneyCurrencyService,
    round_half_up,
)
from modula.platform.pricing.periods import BillingPeriod

logger = structlog.get_logger(__name__)

_REASON_MESSAGES = {
    CouponInvalidReason.NOT_FOUND: "Coupon code does not exist",
    CouponInvalidReason.INACTIVE: "Coupon is no longer active",
    CouponInvalidReason.NOT_YET_VALID: "Coupon is not valid yet",
    CouponInvalidReason.EXPIRED: "Coupon has expired",
    CouponInvalidReason.EXHAUSTED: "Coupon usage limit reached",
    CouponInvalidReason.NOT_APPLICABLE_TO_PLAN: "Coupon does not apply to this plan",
    CouponInvalidReason.USER_LIMIT_REACHED: "You have already used this coupon",
}


def coupon_invalid(reason: CouponInvalidReason, code: str | None = None) -> CouponInvalidError:
    return CouponInvalidError(_REASON_MESSAGES[reason], reason=reason.value, code=code)


class CouponService:
    """Service for coupon management, validation and redemption."""

    def __init__(
        self,
        db_session: AsyncSession,
        currency_service: CurrencyService | None = None,
        config: PricingConfig | None = None,
    ) -> None:
        self.db = db_session
        self.config = config or get_pricing_config()
        self.currency_service = currency_service or MoneyCurrencyService(
            self.config.currency.supported_currencies
        )

    # ========================================
    # Management
    # ========================================

    async def create_coupon(self, request: CouponCreateRequest) -> Coupon:
        """Create a coupon; codes are stored upper-cased."""
        existing = await self.db.execute(
            select(CouponTable.coupon_id).where(CouponTable.code == request.code)
        )
        if existing.scalar_one_or_none() is not None:
            raise DuplicateCouponError(f"Coupon code {request.code} already exists", code=request.code)

        coupon = CouponTable(
            code=request.code,
            discount_type=request.discount_type.value,
            discount_value=request.discount_value,
            applies_to_plans=request.applies_to_plans or None,
            applies_to_periods=(
                [period.value for period in request.applies_to_periods]
                if request.applies_to_periods
                else None
            ),
            usage_limit=request.usage_limit,
            per_user_limit=request.per_user_limit,
            used_count=0,
            starts_at=request.starts_at,
            expires_at=request.expires_at,
            first_payment_only=request.first_payment_only,
            is_active=request.is_active,
            metadata_json=request.metadata,
        )
        self.db.add(coupon)
        await self.db.commit()

        logger.info(
            "Coupon created",
            coupon_id=coupon.coupon_id,
            coupon_code=coupon.code,
            discount_type=coupon.discount_type,
            usage_limit=coupon.usage_limit,
        )
        log_audit_event(
            action="coupon.created",
            category="pricing",
            resource_type="coupon",
            resource_id=coupon.coupon_id,
            code=coupon.code,
        )
        return Coupon.model_validate(coupon)

    async def _find_by_code(self, code: str) -> CouponTable | None:
        # used_count is changed by bulk UPDATEs; always read the stored value
        result = await self.db.execute(
            select(CouponTable)
            .where(CouponTable.code == normalize_code(code))
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def get_coupon_by_code(self, code: str) -> Coupon:
        coupon = await self._find_by_code(code)
        if coupon is None:
            raise CouponNotFoundError(f"Coupon {code} not found", code=normalize_code(code))
        return Coupon.model_validate(coupon)

    async def _set_active(self, coupon_id: str, is_active: bool) -> Coupon:
        coupon = await self.db.get(CouponTable, coupon_id)
        if coupon is None:
            raise CouponNotFoundError(f"Coupon {coupon_id} not found", coupon_id=coupon_id)
        coupon.is_active = is_active
        await self.db.commit()

        action = "coupon.activated" if is_active else "coupon.deactivated"
        logger.info("Coupon status changed", coupon_id=coupon_id, is_active=is_active)
        log_audit_event(
            action=action, category="pricing", resource_type="coupon", resource_id=coupon_id
        )
        return Coupon.model_validate(coupon)

    async def activate_coupon(self, coupon_id: str) -> Coupon:
        return await self._set_active(coupon_id, True)

    async def deactivate_coupon(self, coupon_id: str) -> Coupon:
        return await self._set_active(coupon_id, False)

    async def list_redemptions(
        self, coupon_id: str, user_id: str | None = None
    ) -> list[CouponRedemption]:
        query = select(CouponRedemptionTable).where(CouponRedemptionTable.coupon_id == coupon_id)
        if user_id is not None:
            query = query.where(CouponRedemptionTable.user_id == user_id)
        result = await self.db.execute(query.order_by(CouponRedemptionTable.redeemed_at))
        return [CouponRedemption.model_validate(row) for row in result.scalars().all()]

    async def _count_user_redemptions(self, coupon_id: str, user_id: str) -> int:
        result = await self.db.execute(
            select(func.count())
            .select_from(CouponRedemptionTable)
            .where(
                CouponRedemptionTable.coupon_id == coupon_id,
                CouponRedemptionTable.user_id == user_id,
            )
        )
        return int(result.scalar_one())

    # ========================================
    # Validation
    # ========================================

    async def validate(
        self,
        code: str,
        user_id: str,
        plan_id: str | None,
        billing_period: BillingPeriod | str | None,
        at: datetime,
    ) -> CouponValidationResult:
        """
        Check whether a coupon can be used.

        Checks run in a fixed order and the first failure is reported:
        existence and active flag, validity window, global cap, plan and
        period restriction, per-user cap. Reasons are never aggregated.
        """
        row = await self._find_by_code(code)
        if row is None:
            return CouponValidationResult.fail(CouponInvalidReason.NOT_FOUND)

        coupon = Coupon.model_validate(row)
        if not coupon.is_active:
            return CouponValidationResult.fail(CouponInvalidReason.INACTIVE, coupon)
        if coupon.starts_at is not None and at < coupon.starts_at:
            return CouponValidationResult.fail(CouponInvalidReason.NOT_YET_VALID, coupon)
        if coupon.expires_at is not None and at >= coupon.expires_at:
            return CouponValidationResult.fail(CouponInvalidReason.EXPIRED, coupon)
        if coupon.usage_limit is not None and coupon.used_count >= coupon.usage_limit:
            return CouponValidationResult.fail(CouponInvalidReason.EXHAUSTED, coupon)
        if not coupon.applies_to(plan_id, billing_period):
            return CouponValidationResult.fail(CouponInvalidReason.NOT_APPLICABLE_TO_PLAN, coupon)
        if coupon.per_user_limit is not None:
            used_by_user = await self._count_user_redemptions(coupon.coupon_id, user_id)
            if used_by_user >= coupon.per_user_limit:
                return CouponValidationResult.fail(
                    CouponInvalidReason.USER_LIMIT_REACHED, coupon
                )

        return CouponValidationResult.ok(coupon)

    # ========================================
    # Redemption
    # ========================================

    async def redeem(
        self,
        code: str,
        user_id: str,
        subscription_id: str | None,
        at: datetime,
        plan_id: str | None = None,
        billing_period: BillingPeriod | str | None = None,
    ) -> CouponRedemption:
        """
        Atomically redeem a coupon.

        Plan and billing period default to the referenced subscription's.
        Raises ``CouponInvalidError`` with the failing reason; nothing is
        recorded in that case.
        """
        if subscription_id is not None and (plan_id is None or billing_period is None):
            subscription = await self.db.get(SubscriptionTable, subscription_id)
            if subscription is None:
                raise SubscriptionNotFoundError(
                    f"Subscription {subscription_id} not found", subscription_id=subscription_id
                )
            plan_id = plan_id or subscription.plan_id
            billing_period = billing_period or subscription.billing_period

        try:
            redemption = await self.redeem_in_transaction(
                code, user_id, subscription_id, at, plan_id, billing_period
            )
            await self.db.commit()
        except Exception:
            await self.db.rollback()
            raise

        log_audit_event(
            action="coupon.redeemed",
            category="pricing",
            user_id=user_id,
            resource_type="coupon",
            resource_id=redemption.coupon_id,
            subscription_id=subscription_id,
        )
        await emit_coupon_redeemed(
            coupon_id=redemption.coupon_id,
            code=normalize_code(code),
            user_id=user_id,
            subscription_id=subscription_id,
        )
        return redemption

    async def redeem_in_transaction(
        self,
        code: str,
        user_id: str,
        subscription_id: str | None,
        at: datetime,
        plan_id: str | None,
        billing_period: BillingPeriod | str | None,
    ) -> CouponRedemption:
        """Redeem within the caller's transaction; the caller commits or rolls back."""
        normalized = normalize_code(code)
        result = await self.validate(normalized, user_id, plan_id, billing_period, at)
        if not result.valid or result.coupon is None:
            reason = result.reason or CouponInvalidReason.NOT_FOUND
            logger.info("Coupon rejected", coupon_code=normalized, user_id=user_id, reason=reason.value)
            raise coupon_invalid(reason, normalized)

        coupon = result.coupon
        claimed = await self.db.execute(
            update(CouponTable)
            .where(
                CouponTable.coupon_id == coupon.coupon_id,
                CouponTable.is_active.is_(True),
                or_(
                    CouponTable.usage_limit.is_(None),
                    CouponTable.used_count < CouponTable.usage_limit,
                ),
            )
            .values(used_count=CouponTable.used_count + 1)
            .execution_options(synchronize_session=False)
        )
        if claimed.rowcount == 0:
            logger.info("Coupon exhausted under contention", coupon_code=normalized, user_id=user_id)
            raise coupon_invalid(CouponInvalidReason.EXHAUSTED, normalized)

        if coupon.per_user_limit is not None:
            used_by_user = await self._count_user_redemptions(coupon.coupon_id, user_id)
            if used_by_user >= coupon.per_user_limit:
                logger.info(
                    "Coupon per-user limit reached", coupon_code=normalized, user_id=user_id
                )
                raise coupon_invalid(CouponInvalidReason.USER_LIMIT_REACHED, normalized)

        redemption = CouponRedemptionTable(
            coupon_id=coupon.coupon_id,
            user_id=user_id,
            subscription_id=subscription_id,
            redeemed_at=at,
        )
        self.db.add(redemption)
        await self.db.flush()

        logger.info(
            "Coupon redeemed",
            coupon_code=normalized,
            coupon_id=coupon.coupon_id,
            user_id=user_id,
            subscription_id=subscription_id,
        )
        return CouponRedemption.model_validate(redemption)

    # ========================================
    # Discounts
    # ========================================

    def calculate_discount(
        self,
        amount: Decimal,
        discount_type: DiscountType | str,
        discount_value: Decimal,
        currency: str | None = None,
    ) -> Decimal:
        """
        Apply a discount and return the discounted amount.

        Percentage: ``amount * (1 - value/100)``; fixed: ``amount - value``.
        Both are floored at zero and rounded half-up to the currency's
        minor units.
        """
        currency = currency or self.config.currency.default_currency
        if DiscountType(discount_type) == DiscountType.PERCENTAGE:
            discounted = amount * (Decimal(1) - discount_value / Decimal(100))
        else:
            discounted = amount - discount_value
        discounted = max(ZERO, discounted)
        return round_half_up(discounted, self.currency_service.minor_unit_precision(currency))
