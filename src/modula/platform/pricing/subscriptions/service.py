"""
Subscription lifecycle service.

Every mutation is a read-modify-write on one subscription row guarded by
the row's ``version`` column. A concurrent writer makes the UPDATE match
no rows; the transaction is rolled back, the row reloaded and the operation
re-applied, up to ``concurrency.max_attempts`` times before
``ConcurrencyConflictError`` is raised.

Gateway charges and domain events are collected while the transition is
applied and dispatched only after it commits.
"""

from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Any

import structlog
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm.exc import StaleDataError
from tenacity import AsyncRetrying, retry_if_exception_type, stop_after_attempt, wait_fixed

from modula.platform.logging import log_audit_event
from modula.platform.pricing.catalog.models import PlanKind
from modula.platform.pricing.catalog.service import PriceCatalogService
from modula.platform.pricing.config import PricingConfig, ProrationRemainderPolicy, get_pricing_config
from modula.platform.pricing.coupons.models import CouponInvalidReason, normalize_code
from modula.platform.pricing.coupons.service import CouponService, coupon_invalid
from modula.platform.pricing.events import (
    PricingEvents,
    emit_coupon_redeemed,
    emit_subscription_event,
)
from modula.platform.pricing.exceptions import (
    AmbiguousPriceError,
    ConcurrencyConflictError,
    InvalidRefundError,
    InvalidTransitionError,
    PlanNotSelectableError,
    PriceNotFoundError,
    SubscriptionNotFoundError,
)
from modula.platform.pricing.gateway import ChargeDispatcher, ChargeReason, PaymentGateway
from modula.platform.pricing.models import SubscriptionTable
from modula.platform.pricing.money_utils import (
    ZERO,
    CurrencyService,
    MoneyCurrencyService,
    MoneyHandler,
    round_half_up,
)
from modula.platform.pricing.periods import BillingPeriod, period_end
from modula.platform.pricing.subscriptions.models import (
    PlanChangeResult,
    ProrationResult,
    RefundQuote,
    RefundType,
    Subscription,
    SubscriptionCreateRequest,
    SubscriptionStatus,
)
from modula.platform.pricing.subscriptions.proration import calculate_proration, unused_fraction

logger = structlog.get_logger(__name__)

ACTIVE = SubscriptionStatus.ACTIVE.value
TRIAL = SubscriptionStatus.TRIAL.value
PAUSED = SubscriptionStatus.PAUSED.value
PAST_DUE = SubscriptionStatus.PAST_DUE.value
CANCELLED = SubscriptionStatus.CANCELLED.value
EXPIRED = SubscriptionStatus.EXPIRED.value
TERMINAL = (CANCELLED, EXPIRED)


@dataclass
class _Effects:
    """Side effects of a transition, released after commit."""

    events: list[tuple[str, dict[str, Any]]] = field(default_factory=list)
    charges: list[tuple[ChargeReason, Decimal]] = field(default_factory=list)
    audit: list[tuple[str, dict[str, Any]]] = field(default_factory=list)
    result: Any = None

    def event(self, event_type: str, **data: Any) -> None:
        self.events.append((event_type, data))


Mutator = Callable[[SubscriptionTable, _Effects], Awaitable[None]]


class SubscriptionService:
    """Service for the subscription state machine."""

    def __init__(
        self,
        db_session: AsyncSession,
        gateway: PaymentGateway | None = None,
        currency_service: CurrencyService | None = None,
        config: PricingConfig | None = None,
    ) -> None:
        self.db = db_session
        self.config = config or get_pricing_config()
        self.currency_service = currency_service or MoneyCurrencyService(
            self.config.currency.supported_currencies
        )
        self.catalog = PriceCatalogService(db_session, self.currency_service, self.config)
        self.coupons = CouponService(db_session, self.currency_service, self.config)
        self.charges = ChargeDispatcher(db_session, gateway)
        self.money = MoneyHandler(
            self.config.currency.default_currency, self.config.currency.default_locale
        )

    # ========================================
    # Queries
    # ========================================

    async def get_subscription(self, subscription_id: str) -> Subscription:
        return Subscription.model_validate(await self._load_row(subscription_id))

    async def list_for_user(
        self, user_id: str, include_terminal: bool = True
    ) -> list[Subscription]:
        query = select(SubscriptionTable).where(SubscriptionTable.user_id == user_id)
        if not include_terminal:
            query = query.where(SubscriptionTable.status.not_in(TERMINAL))
        result = await self.db.execute(
            query.order_by(SubscriptionTable.created_at).execution_options(populate_existing=True)
        )
        return [Subscription.model_validate(row) for row in result.scalars().all()]

    async def _load_row(self, subscription_id: str) -> SubscriptionTable:
        row = await self.db.get(SubscriptionTable, subscription_id, populate_existing=True)
        if row is None:
            raise SubscriptionNotFoundError(
                f"Subscription {subscription_id} not found", subscription_id=subscription_id
            )
        return row

    # ========================================
    # Transition machinery
    # ========================================

    async def _mutate(
        self, subscription_id: str, operation: str, mutator: Mutator, now: datetime
    ) -> tuple[Subscription, _Effects]:
        """Apply ``mutator`` under optimistic locking, commit, then release effects."""
        attempts = self.config.concurrency.max_attempts
        effects = _Effects()
        subscription: Subscription | None = None
        try:
            async for attempt in AsyncRetrying(
                stop=stop_after_attempt(attempts),
                wait=wait_fixed(self.config.concurrency.retry_wait_ms / 1000),
                retry=retry_if_exception_type(StaleDataError),
                reraise=True,
            ):
                with attempt:
                    effects = _Effects()
                    try:
                        row = await self._load_row(subscription_id)
                        await mutator(row, effects)
                        await self.db.commit()
                        subscription = Subscription.model_validate(row)
                    except StaleDataError:
                        await self.db.rollback()
                        logger.info(
                            "Subscription version conflict, retrying",
                            subscription_id=subscription_id,
                            operation=operation,
                            attempt=attempt.retry_state.attempt_number,
                        )
                        raise
                    except Exception:
                        await self.db.rollback()
                        raise
        except StaleDataError as exc:
            logger.warning(
                "Subscription update conflict not resolved",
                subscription_id=subscription_id,
                operation=operation,
                attempts=attempts,
            )
            raise ConcurrencyConflictError(
                f"Subscription {subscription_id} was modified concurrently",
                subscription_id=subscription_id,
                attempts=attempts,
            ) from exc

        if subscription is None:
            raise SubscriptionNotFoundError(
                f"Subscription {subscription_id} not found", subscription_id=subscription_id
            )
        await self._release(subscription, effects, now)
        return subscription, effects

    async def _release(
        self, subscription: Subscription, effects: _Effects, at: datetime
    ) -> None:
        for action, data in effects.audit:
            log_audit_event(
                action=action,
                category="pricing",
                user_id=subscription.user_id,
                resource_type="subscription",
                resource_id=subscription.subscription_id,
                **data,
            )
        for event_type, data in effects.events:
            await emit_subscription_event(
                event_type, subscription.subscription_id, subscription.user_id, **data
            )
        for reason, amount in effects.charges:
            await self.charges.dispatch(
                subscription.subscription_id, amount, subscription.currency, reason, at
            )

    @staticmethod
    def _require(row: SubscriptionTable, operation: str, *allowed: str) -> None:
        if row.status not in allowed:
            raise InvalidTransitionError(
                f"Cannot {operation} a {row.status} subscription",
                current_state=row.status,
                operation=operation,
            )

    @staticmethod
    def _require_live(row: SubscriptionTable, operation: str) -> None:
        if row.status in TERMINAL:
            raise InvalidTransitionError(
                f"Cannot {operation} a {row.status} subscription",
                current_state=row.status,
                operation=operation,
            )

    def _precision(self, currency: str) -> int:
        return self.currency_service.minor_unit_precision(currency)

    def _charge_amount(self, row: SubscriptionTable, base: Decimal, first_payment: bool) -> Decimal:
        """Apply the coupon snapshot and any carried credit to a period charge."""
        amount = base
        if row.discount_type and row.discount_value is not None:
            if first_payment or row.discount_recurring:
                amount = self.coupons.calculate_discount(
                    amount, row.discount_type, row.discount_value, row.currency
                )
        if row.account_credit and row.account_credit > ZERO:
            applied = min(row.account_credit, amount)
            row.account_credit = row.account_credit - applied
            amount -= applied
        return round_half_up(amount, self._precision(row.currency))

    async def _setup_fee(self, price_point_id: str) -> Decimal:
        price = await self.catalog.get_price_point(price_point_id)
        return price.setup_fee or ZERO

    # ========================================
    # Creation
    # ========================================

    async def create_subscription(
        self, request: SubscriptionCreateRequest, now: datetime
    ) -> Subscription:
        """
        Subscribe a user to a plan.

        The plan must be active and offer the billing period, and a price
        must resolve at ``now``. The price is locked on the subscription. A
        coupon, if given, is redeemed in the same transaction as the insert.
        Plans with trial days start in ``trial``; others start ``active`` and
        are charged after commit.
        """
        plan = await self.catalog.ensure_selectable(request.plan_id, request.billing_period)
        currency = self.catalog.validate_currency(request.currency)
        price = await self.catalog.resolve_price(
            plan.plan_id, currency, request.billing_period, now
        )

        coupon = None
        code = normalize_code(request.coupon_code) if request.coupon_code else None
        if code:
            validation = await self.coupons.validate(
                code, request.user_id, plan.plan_id, request.billing_period, now
            )
            if not validation.valid:
                raise coupon_invalid(validation.reason or CouponInvalidReason.NOT_FOUND, code)
            coupon = validation.coupon

        if plan.trial_days > 0:
            status = TRIAL
            trial_ends_at: datetime | None = now + timedelta(days=plan.trial_days)
            ends = trial_ends_at
        else:
            status = ACTIVE
            trial_ends_at = None
            ends = period_end(now, request.billing_period)
        anchor = now if status == ACTIVE else None

        row = SubscriptionTable(
            user_id=request.user_id,
            plan_id=plan.plan_id,
            billing_period=request.billing_period.value,
            currency=currency,
            status=status,
            price_point_id=price.price_point_id,
            unit_amount=price.amount,
            trial_ends_at=trial_ends_at,
            current_period_start=now,
            current_period_end=ends,
            period_sequence=1,
            billing_anchor_at=anchor,
            auto_renew=request.auto_renew and plan.kind != PlanKind.ONE_TIME,
            account_credit=ZERO,
            metadata_json=request.metadata,
        )
        if coupon is not None:
            row.coupon_id = coupon.coupon_id
            row.discount_type = coupon.discount_type.value
            row.discount_value = coupon.discount_value
            row.discount_recurring = not coupon.first_payment_only

        self.db.add(row)
        try:
            await self.db.flush()
            if code:
                await self.coupons.redeem_in_transaction(
                    code,
                    request.user_id,
                    row.subscription_id,
                    now,
                    plan.plan_id,
                    request.billing_period,
                )
            initial_charge = None
            if status == ACTIVE:
                initial_charge = self._charge_amount(row, price.amount, first_payment=True)
                initial_charge += price.setup_fee or ZERO
            await self.db.commit()
        except Exception:
            await self.db.rollback()
            raise

        subscription = Subscription.model_validate(row)
        logger.info(
            "Subscription created",
            subscription_id=subscription.subscription_id,
            user_id=subscription.user_id,
            plan_id=subscription.plan_id,
            status=subscription.status.value,
            unit_amount=str(subscription.unit_amount),
            coupon_code=code,
        )

        effects = _Effects()
        effects.audit.append(("subscription.created", {"plan_id": plan.plan_id}))
        effects.event(
            PricingEvents.SUBSCRIPTION_CREATED,
            plan_id=plan.plan_id,
            status=subscription.status.value,
            billing_period=subscription.billing_period.value,
            currency=currency,
            unit_amount=str(subscription.unit_amount),
        )
        if initial_charge is not None:
            effects.charges.append((ChargeReason.INITIAL, initial_charge))
        await self._release(subscription, effects, now)

        if coupon is not None and code:
            await emit_coupon_redeemed(
                coupon_id=coupon.coupon_id,
                code=code,
                user_id=request.user_id,
                subscription_id=subscription.subscription_id,
            )
        return subscription

    # ========================================
    # Plan changes
    # ========================================

    async def change_plan(
        self,
        subscription_id: str,
        new_plan_id: str,
        now: datetime,
        billing_period: BillingPeriod | None = None,
    ) -> PlanChangeResult:
        """
        Switch plans immediately with proration.

        Unused time on the current period is credited at the locked price and
        applied to the new plan's price; the new period starts at ``now``.
        Trial subscriptions switch plan without credit or charge and keep
        their trial window.
        """

        async def mutate(row: SubscriptionTable, effects: _Effects) -> None:
            self._require(row, "change plan", ACTIVE, TRIAL)
            period = billing_period or BillingPeriod(row.billing_period)
            await self.catalog.ensure_selectable(new_plan_id, period)
            price = await self.catalog.resolve_price(new_plan_id, row.currency, period, now)
            precision = self._precision(row.currency)
            old_plan_id = row.plan_id

            if row.status == TRIAL:
                proration = ProrationResult(
                    unused_fraction=ZERO, credit=ZERO, new_price=price.amount, new_charge=ZERO
                )
                charged = ZERO
            else:
                proration = calculate_proration(
                    row.current_period_start,
                    row.current_period_end,
                    now,
                    row.unit_amount,
                    price.amount,
                    precision,
                )
                row.current_period_start = now
                row.current_period_end = period_end(now, period)
                row.billing_anchor_at = now
                row.period_sequence += 1
                if (
                    proration.remainder > ZERO
                    and self.config.proration.remainder_policy
                    == ProrationRemainderPolicy.CARRY_FORWARD
                ):
                    row.account_credit = (row.account_credit or ZERO) + proration.remainder
                charged = self._charge_amount(row, proration.new_charge, first_payment=False)

            row.plan_id = new_plan_id
            row.billing_period = period.value
            row.price_point_id = price.price_point_id
            row.unit_amount = price.amount
            row.pending_plan_id = None
            row.pending_effective_at = None

            effects.result = (proration, charged)
            effects.charges.append((ChargeReason.PLAN_CHANGE, charged))
            effects.event(
                PricingEvents.SUBSCRIPTION_PLAN_CHANGED,
                old_plan_id=old_plan_id,
                new_plan_id=new_plan_id,
                credit=str(proration.credit),
                new_charge=str(proration.new_charge),
            )
            effects.audit.append(
                ("subscription.plan_changed", {"old_plan_id": old_plan_id, "new_plan_id": new_plan_id})
            )
            logger.info(
                "Subscription plan changed",
                subscription_id=subscription_id,
                old_plan_id=old_plan_id,
                new_plan_id=new_plan_id,
                credit=str(proration.credit),
                new_charge=str(proration.new_charge),
                remainder=str(proration.remainder),
            )

        subscription, effects = await self._mutate(subscription_id, "change_plan", mutate, now)
        proration, charged = effects.result
        return PlanChangeResult(
            subscription=subscription,
            proration=proration,
            charged_amount=charged,
            formatted_charge=self.money.format_amount(charged, subscription.currency),
        )

    async def schedule_downgrade(
        self, subscription_id: str, new_plan_id: str, now: datetime
    ) -> Subscription:
        """Switch to ``new_plan_id`` at the end of the current period."""

        async def mutate(row: SubscriptionTable, effects: _Effects) -> None:
            self._require(row, "schedule a plan change for", ACTIVE, TRIAL, PAST_DUE)
            if new_plan_id == row.plan_id:
                raise PlanNotSelectableError(
                    "Subscription is already on this plan",
                    plan_id=new_plan_id,
                    reason="current-plan",
                )
            await self.catalog.ensure_selectable(new_plan_id, row.billing_period)
            # Fail now rather than at the boundary if the plan has no price then
            await self.catalog.resolve_price(
                new_plan_id, row.currency, row.billing_period, row.current_period_end
            )
            row.pending_plan_id = new_plan_id
            row.pending_effective_at = row.current_period_end

            effects.event(
                PricingEvents.SUBSCRIPTION_DOWNGRADE_SCHEDULED,
                new_plan_id=new_plan_id,
                effective_at=row.current_period_end.isoformat(),
            )
            effects.audit.append(("subscription.downgrade_scheduled", {"new_plan_id": new_plan_id}))
            logger.info(
                "Plan change scheduled",
                subscription_id=subscription_id,
                new_plan_id=new_plan_id,
                effective_at=row.current_period_end.isoformat(),
            )

        subscription, _ = await self._mutate(subscription_id, "schedule_downgrade", mutate, now)
        return subscription

    async def cancel_scheduled_change(self, subscription_id: str, now: datetime) -> Subscription:
        async def mutate(row: SubscriptionTable, effects: _Effects) -> None:
            self._require_live(row, "cancel the scheduled change of")
            if row.pending_plan_id is None:
                raise InvalidTransitionError(
                    "No plan change is scheduled",
                    current_state=row.status,
                    operation="cancel_scheduled_change",
                )
            effects.event(
                PricingEvents.SUBSCRIPTION_SCHEDULED_CHANGE_CANCELLED,
                pending_plan_id=row.pending_plan_id,
            )
            row.pending_plan_id = None
            row.pending_effective_at = None
            logger.info("Scheduled plan change cancelled", subscription_id=subscription_id)

        subscription, _ = await self._mutate(
            subscription_id, "cancel_scheduled_change", mutate, now
        )
        return subscription

    async def migrate_price(self, subscription_id: str, now: datetime) -> Subscription:
        """Lock the catalog price currently active for the subscription's plan."""

        async def mutate(row: SubscriptionTable, effects: _Effects) -> None:
            self._require_live(row, "migrate the price of")
            price = await self.catalog.resolve_price(
                row.plan_id, row.currency, row.billing_period, now
            )
            if price.price_point_id == row.price_point_id:
                return
            old_amount = row.unit_amount
            row.price_point_id = price.price_point_id
            row.unit_amount = price.amount

            effects.event(
                PricingEvents.SUBSCRIPTION_PRICE_MIGRATED,
                old_amount=str(old_amount),
                new_amount=str(price.amount),
                price_point_id=price.price_point_id,
            )
            effects.audit.append(
                ("subscription.price_migrated", {"price_point_id": price.price_point_id})
            )
            logger.info(
                "Subscription price migrated",
                subscription_id=subscription_id,
                old_amount=str(old_amount),
                new_amount=str(price.amount),
            )

        subscription, _ = await self._mutate(subscription_id, "migrate_price", mutate, now)
        return subscription

    # ========================================
    # Pause / resume
    # ========================================

    async def pause(
        self, subscription_id: str, now: datetime, resume_at: datetime | None = None
    ) -> Subscription:
        async def mutate(row: SubscriptionTable, effects: _Effects) -> None:
            self._require(row, "pause", ACTIVE, TRIAL)
            if resume_at is not None and resume_at <= now:
                raise InvalidTransitionError(
                    "resume_at must be in the future", current_state=row.status, operation="pause"
                )
            row.status = PAUSED
            row.paused_at = now
            row.resume_at = resume_at

            effects.event(
                PricingEvents.SUBSCRIPTION_PAUSED,
                resume_at=resume_at.isoformat() if resume_at else None,
            )
            effects.audit.append(("subscription.paused", {}))
            logger.info("Subscription paused", subscription_id=subscription_id)

        subscription, _ = await self._mutate(subscription_id, "pause", mutate, now)
        return subscription

    def _resume_row(self, row: SubscriptionTable, at: datetime, effects: _Effects) -> None:
        """
        Reactivate a paused row, shifting its period by the paused duration.

        A subscription paused during its trial goes back to ``trial`` so the
        trial end still converts it.
        """
        paused_at = row.paused_at or at
        shift = max(timedelta(0), at - paused_at)
        row.current_period_start = row.current_period_start + shift
        row.current_period_end = row.current_period_end + shift
        if row.trial_ends_at is not None:
            row.trial_ends_at = row.trial_ends_at + shift
        if row.pending_effective_at is not None:
            row.pending_effective_at = row.pending_effective_at + shift
        if row.billing_anchor_at is not None:
            row.billing_anchor_at = row.billing_anchor_at + shift
        # Conversion bumps the sequence, so sequence 1 with a trial end is still a trial
        in_trial = row.trial_ends_at is not None and row.period_sequence == 1
        row.status = TRIAL if in_trial else ACTIVE
        row.paused_at = None
        row.resume_at = None

        effects.event(
            PricingEvents.SUBSCRIPTION_RESUMED,
            shifted_by_seconds=int(shift.total_seconds()),
            current_period_end=row.current_period_end.isoformat(),
        )
        effects.audit.append(("subscription.resumed", {}))
        logger.info(
            "Subscription resumed",
            subscription_id=row.subscription_id,
            shifted_by=str(shift),
        )

    async def resume(self, subscription_id: str, now: datetime) -> Subscription:
        async def mutate(row: SubscriptionTable, effects: _Effects) -> None:
            self._require(row, "resume", PAUSED)
            self._resume_row(row, now, effects)

        subscription, _ = await self._mutate(subscription_id, "resume", mutate, now)
        return subscription

    # ========================================
    # Cancellation
    # ========================================

    async def cancel(
        self,
        subscription_id: str,
        now: datetime,
        at_period_end: bool = True,
        reason: str | None = None,
    ) -> Subscription:
        """
        Cancel a subscription.

        At period end the subscription keeps running and is cancelled by
        ``advance`` once the period ends. Immediate cancellation ends it now.
        """

        async def mutate(row: SubscriptionTable, effects: _Effects) -> None:
            if at_period_end:
                self._require(row, "cancel", ACTIVE, TRIAL, PAUSED)
                row.cancel_at_period_end = True
                row.cancelled_at = now
                row.cancel_reason = reason
                effects.event(
                    PricingEvents.SUBSCRIPTION_CANCEL_SCHEDULED,
                    effective_at=row.current_period_end.isoformat(),
                    reason=reason,
                )
                logger.info(
                    "Subscription set to cancel at period end",
                    subscription_id=subscription_id,
                    period_end=row.current_period_end.isoformat(),
                )
            else:
                self._require_live(row, "cancel")
                row.status = CANCELLED
                row.cancelled_at = now
                row.ended_at = now
                row.cancel_reason = reason
                effects.event(PricingEvents.SUBSCRIPTION_CANCELLED, immediate=True, reason=reason)
                logger.info("Subscription cancelled", subscription_id=subscription_id)
            effects.audit.append(
                ("subscription.cancelled", {"at_period_end": at_period_end, "reason": reason})
            )

        subscription, _ = await self._mutate(subscription_id, "cancel", mutate, now)
        return subscription

    async def reactivate(self, subscription_id: str, now: datetime) -> Subscription:
        """Undo a pending cancel-at-period-end."""

        async def mutate(row: SubscriptionTable, effects: _Effects) -> None:
            self._require_live(row, "reactivate")
            if not row.cancel_at_period_end:
                raise InvalidTransitionError(
                    "Subscription is not set to cancel",
                    current_state=row.status,
                    operation="reactivate",
                )
            row.cancel_at_period_end = False
            row.cancelled_at = None
            row.cancel_reason = None
            effects.event(PricingEvents.SUBSCRIPTION_REACTIVATED)
            effects.audit.append(("subscription.reactivated", {}))
            logger.info("Subscription reactivated", subscription_id=subscription_id)

        subscription, _ = await self._mutate(subscription_id, "reactivate", mutate, now)
        return subscription

    # ========================================
    # Payment status
    # ========================================

    async def mark_past_due(self, subscription_id: str, now: datetime) -> Subscription:
        async def mutate(row: SubscriptionTable, effects: _Effects) -> None:
            self._require(row, "mark past due", ACTIVE)
            row.status = PAST_DUE
            effects.event(PricingEvents.SUBSCRIPTION_PAST_DUE)
            effects.audit.append(("subscription.past_due", {}))
            logger.warning("Subscription past due", subscription_id=subscription_id)

        subscription, _ = await self._mutate(subscription_id, "mark_past_due", mutate, now)
        return subscription

    async def record_payment_recovered(self, subscription_id: str, now: datetime) -> Subscription:
        async def mutate(row: SubscriptionTable, effects: _Effects) -> None:
            self._require(row, "recover", PAST_DUE)
            row.status = ACTIVE
            effects.event(PricingEvents.SUBSCRIPTION_RECOVERED)
            effects.audit.append(("subscription.recovered", {}))
            logger.info("Subscription payment recovered", subscription_id=subscription_id)

        subscription, _ = await self._mutate(
            subscription_id, "record_payment_recovered", mutate, now
        )
        return subscription

    async def record_payment_exhausted(
        self,
        subscription_id: str,
        now: datetime,
        terminal: SubscriptionStatus = SubscriptionStatus.CANCELLED,
    ) -> Subscription:
        """End a past-due subscription after payment retries are exhausted."""
        if not terminal.is_terminal:
            raise InvalidTransitionError(
                f"{terminal.value} is not a terminal state",
                current_state=terminal.value,
                operation="record_payment_exhausted",
            )

        async def mutate(row: SubscriptionTable, effects: _Effects) -> None:
            self._require(row, "exhaust payment for", PAST_DUE)
            row.status = terminal.value
            row.ended_at = now
            if terminal == SubscriptionStatus.CANCELLED:
                row.cancelled_at = now
                row.cancel_reason = row.cancel_reason or "payment_failed"
                effects.event(PricingEvents.SUBSCRIPTION_CANCELLED, reason="payment_failed")
            else:
                effects.event(PricingEvents.SUBSCRIPTION_EXPIRED, reason="payment_failed")
            effects.audit.append(("subscription.payment_exhausted", {"terminal": terminal.value}))
            logger.warning(
                "Subscription ended after payment failure",
                subscription_id=subscription_id,
                status=terminal.value,
            )

        subscription, _ = await self._mutate(
            subscription_id, "record_payment_exhausted", mutate, now
        )
        return subscription

    # ========================================
    # Extensions and refunds
    # ========================================

    async def extend(
        self, subscription_id: str, days: int, reason: str, now: datetime
    ) -> Subscription:
        """
        Push the current period end out by ``days``; logged in metadata.

        Later renewals are counted from the new period end.
        """
        if days <= 0:
            raise InvalidTransitionError(
                "Extension must be at least one day", current_state="-", operation="extend"
            )

        async def mutate(row: SubscriptionTable, effects: _Effects) -> None:
            self._require_live(row, "extend")
            previous_end = row.current_period_end
            delta = timedelta(days=days)
            row.current_period_end = previous_end + delta
            if row.status == TRIAL and row.trial_ends_at is not None:
                row.trial_ends_at = row.trial_ends_at + delta
            if row.pending_effective_at is not None and row.pending_effective_at == previous_end:
                row.pending_effective_at = row.current_period_end
            if row.billing_anchor_at is not None:
                # The extension moves the billing cycle
                row.billing_anchor_at = row.current_period_end

            metadata = dict(row.metadata_json or {})
            extensions = list(metadata.get("extensions", []))
            extensions.append(
                {
                    "days": days,
                    "reason": reason,
                    "extended_at": now.isoformat(),
                    "previous_end": previous_end.isoformat(),
                }
            )
            metadata["extensions"] = extensions
            row.metadata_json = metadata

            effects.event(
                PricingEvents.SUBSCRIPTION_EXTENDED,
                days=days,
                reason=reason,
                current_period_end=row.current_period_end.isoformat(),
            )
            effects.audit.append(("subscription.extended", {"days": days, "reason": reason}))
            logger.info(
                "Subscription extended", subscription_id=subscription_id, days=days, reason=reason
            )

        subscription, _ = await self._mutate(subscription_id, "extend", mutate, now)
        return subscription

    async def quote_refund(
        self,
        subscription_id: str,
        refund_type: RefundType,
        now: datetime,
        amount: Decimal | None = None,
    ) -> RefundQuote:
        """
        Quote a refund for the current period.

        ``full`` returns the period price, ``prorated`` the unused share of
        it and ``partial`` the requested amount. Nothing is refunded; trial
        periods quote zero.
        """
        subscription = await self.get_subscription(subscription_id)
        paid = ZERO if subscription.status == SubscriptionStatus.TRIAL else subscription.unit_amount
        precision = self._precision(subscription.currency)
        fraction = None

        if refund_type == RefundType.FULL:
            refund = paid
        elif refund_type == RefundType.PRORATED:
            fraction = unused_fraction(
                subscription.current_period_start, subscription.current_period_end, now
            )
            refund = round_half_up(fraction * paid, precision)
        else:
            if amount is None or amount <= ZERO or amount > paid:
                raise InvalidRefundError(
                    "Partial refund amount must be positive and at most the period price",
                    subscription_id=subscription_id,
                    amount=str(amount) if amount is not None else None,
                )
            refund = round_half_up(amount, precision)

        logger.info(
            "Refund quoted",
            subscription_id=subscription_id,
            refund_type=refund_type.value,
            amount=str(refund),
        )
        return RefundQuote(
            subscription_id=subscription_id,
            refund_type=refund_type,
            amount=refund,
            currency=subscription.currency,
            formatted_amount=self.money.format_amount(refund, subscription.currency),
            unused_fraction=fraction,
        )

    # ========================================
    # Period advance
    # ========================================

    async def advance(self, subscription_id: str, now: datetime) -> Subscription:
        """
        Apply every boundary that has passed by ``now``.

        Handles trial end, scheduled plan changes, renewal, cancel at period
        end, expiry (non-renewing, or past due beyond the grace period) and
        automatic resume. Repeats until the subscription is caught up, so a
        second call at the same instant changes nothing.
        """

        async def mutate(row: SubscriptionTable, effects: _Effects) -> None:
            await self._advance_row(row, effects, now)

        subscription, _ = await self._mutate(subscription_id, "advance", mutate, now)
        return subscription

    async def _advance_row(self, row: SubscriptionTable, effects: _Effects, now: datetime) -> None:
        grace = timedelta(days=self.config.sweep.past_due_grace_days)

        while row.status not in TERMINAL:
            if row.status == PAUSED:
                if row.resume_at is not None and row.resume_at <= now:
                    self._resume_row(row, row.resume_at, effects)
                    continue
                if row.cancel_at_period_end and row.current_period_end <= now:
                    self._end(row, CANCELLED, row.current_period_end, effects)
                return

            if row.status == TRIAL:
                if row.trial_ends_at is None or row.trial_ends_at > now:
                    return
                if row.cancel_at_period_end:
                    self._end(row, CANCELLED, row.trial_ends_at, effects)
                    return
                await self._start_next_period(row, row.trial_ends_at, effects)
                continue

            if row.status == ACTIVE:
                if row.current_period_end > now:
                    return
                boundary = row.current_period_end
                if row.cancel_at_period_end:
                    self._end(row, CANCELLED, boundary, effects)
                    return
                plan = await self.catalog.get_plan(row.plan_id)
                if not row.auto_renew or plan.kind == PlanKind.ONE_TIME:
                    self._end(row, EXPIRED, boundary, effects)
                    return
                await self._start_next_period(row, boundary, effects)
                continue

            if row.status == PAST_DUE:
                if row.current_period_end + grace <= now:
                    self._end(row, EXPIRED, row.current_period_end + grace, effects)
                return

            return

    async def _start_next_period(
        self, row: SubscriptionTable, boundary: datetime, effects: _Effects
    ) -> None:
        """
        Begin the period starting at ``boundary`` and queue its charge.

        A due scheduled plan change is applied first. If the pending plan has
        no single price at the boundary, the change is dropped and the
        subscription renews on its current plan and locked price.
        """
        converting = row.status == TRIAL
        first_payment = row.trial_ends_at is not None and row.period_sequence == 1

        price = None
        if row.pending_plan_id is not None and (
            row.pending_effective_at is None or row.pending_effective_at <= boundary
        ):
            try:
                price = await self.catalog.resolve_price(
                    row.pending_plan_id, row.currency, row.billing_period, boundary
                )
            except (PriceNotFoundError, AmbiguousPriceError) as exc:
                effects.event(
                    PricingEvents.SUBSCRIPTION_SCHEDULED_CHANGE_FAILED,
                    pending_plan_id=row.pending_plan_id,
                    error_code=exc.error_code,
                    error=exc.message,
                )
                effects.audit.append(
                    (
                        "subscription.scheduled_change_failed",
                        {"pending_plan_id": row.pending_plan_id, "error_code": exc.error_code},
                    )
                )
                logger.warning(
                    "Scheduled plan change dropped, pending plan has no price",
                    subscription_id=row.subscription_id,
                    pending_plan_id=row.pending_plan_id,
                    boundary=boundary.isoformat(),
                    error_code=exc.error_code,
                )
                row.pending_plan_id = None
                row.pending_effective_at = None

        if price is not None:
            old_plan_id = row.plan_id
            row.plan_id = row.pending_plan_id
            row.price_point_id = price.price_point_id
            row.unit_amount = price.amount
            row.pending_plan_id = None
            row.pending_effective_at = None
            effects.event(
                PricingEvents.SUBSCRIPTION_PLAN_CHANGED,
                old_plan_id=old_plan_id,
                new_plan_id=row.plan_id,
                scheduled=True,
            )
            logger.info(
                "Scheduled plan change applied",
                subscription_id=row.subscription_id,
                old_plan_id=old_plan_id,
                new_plan_id=row.plan_id,
            )

        if converting or row.billing_anchor_at is None:
            row.billing_anchor_at = boundary
        row.status = ACTIVE
        row.current_period_start = boundary
        row.current_period_end = period_end(
            boundary, row.billing_period, anchor=row.billing_anchor_at
        )
        row.period_sequence += 1

        amount = self._charge_amount(row, row.unit_amount, first_payment=first_payment)
        if first_payment:
            amount += await self._setup_fee(row.price_point_id)

        if converting:
            effects.charges.append((ChargeReason.TRIAL_CONVERSION, amount))
            effects.event(PricingEvents.SUBSCRIPTION_TRIAL_ENDED, plan_id=row.plan_id)
            logger.info("Trial converted", subscription_id=row.subscription_id)
        else:
            reason = ChargeReason.TRIAL_CONVERSION if first_payment else ChargeReason.RENEWAL
            effects.charges.append((reason, amount))
            effects.event(
                PricingEvents.SUBSCRIPTION_RENEWED,
                period_sequence=row.period_sequence,
                current_period_end=row.current_period_end.isoformat(),
            )
            logger.info(
                "Subscription renewed",
                subscription_id=row.subscription_id,
                period_sequence=row.period_sequence,
                period_end=row.current_period_end.isoformat(),
            )

    def _end(self, row: SubscriptionTable, status: str, at: datetime, effects: _Effects) -> None:
        row.status = status
        row.ended_at = at
        if status == CANCELLED:
            row.cancelled_at = row.cancelled_at or at
            effects.event(PricingEvents.SUBSCRIPTION_CANCELLED, immediate=False)
        else:
            effects.event(PricingEvents.SUBSCRIPTION_EXPIRED)
        effects.audit.append((f"subscription.{status}", {}))
        logger.info("Subscription ended", subscription_id=row.subscription_id, status=status)
