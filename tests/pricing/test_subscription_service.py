"""
Tests for the subscription lifecycle service.

Covers creation, plan changes with proration, pause/resume, cancellation,
payment status, period advance, refunds, extensions and optimistic locking.
"""

from datetime import UTC, datetime, timedelta
from decimal import Decimal

import pytest
from sqlalchemy import event, text

from modula.platform.events import EventPriority
from modula.platform.pricing.catalog import PlanKind
from modula.platform.pricing.config import (
    CurrencyConfig,
    PricingConfig,
    ProrationConfig,
    ProrationRemainderPolicy,
)
from modula.platform.pricing.coupons import (
    CouponCreateRequest,
    CouponService,
    DiscountType,
)
from modula.platform.pricing.events import PricingEvents
from modula.platform.pricing.exceptions import (
    ConcurrencyConflictError,
    CouponInvalidError,
    InvalidRefundError,
    InvalidTransitionError,
    PlanNotSelectableError,
    PriceNotFoundError,
    SubscriptionNotFoundError,
    UnsupportedCurrencyError,
)
from modula.platform.pricing.gateway import ChargeReason, ChargeStatus
from modula.platform.pricing.periods import BillingPeriod
from modula.platform.pricing.subscriptions import (
    RefundType,
    SubscriptionCreateRequest,
    SubscriptionService,
    SubscriptionStatus,
)

pytestmark = pytest.mark.asyncio

APR_1 = datetime(2025, 4, 1, tzinfo=UTC)
APR_5 = datetime(2025, 4, 5, tzinfo=UTC)
APR_11 = datetime(2025, 4, 11, tzinfo=UTC)
APR_15 = datetime(2025, 4, 15, tzinfo=UTC)
APR_20 = datetime(2025, 4, 20, tzinfo=UTC)
APR_21 = datetime(2025, 4, 21, tzinfo=UTC)
APR_25 = datetime(2025, 4, 25, tzinfo=UTC)
MAY_1 = datetime(2025, 5, 1, tzinfo=UTC)
MAY_2 = datetime(2025, 5, 2, tzinfo=UTC)
MAY_4 = datetime(2025, 5, 4, tzinfo=UTC)
MAY_11 = datetime(2025, 5, 11, tzinfo=UTC)
JUL_1 = datetime(2025, 7, 1, tzinfo=UTC)
JUL_15 = datetime(2025, 7, 15, tzinfo=UTC)
AUG_1 = datetime(2025, 8, 1, tzinfo=UTC)


@pytest.fixture
def service(async_session, gateway, pricing_config) -> SubscriptionService:
    return SubscriptionService(async_session, gateway=gateway, config=pricing_config)


@pytest.fixture
def coupons(async_session, pricing_config) -> CouponService:
    return CouponService(async_session, config=pricing_config)


@pytest.fixture
async def plans(plan_factory):
    """Starter 10.00, pro 30.00 and elite 60.00 monthly plans."""
    return {
        "starter": await plan_factory("starter", amount="10.00"),
        "pro": await plan_factory("pro", amount="30.00"),
        "elite": await plan_factory("elite", amount="60.00"),
    }


def request_for(
    plan, user_id: str = "user-1", currency: str = "USD", **kwargs
) -> SubscriptionCreateRequest:
    return SubscriptionCreateRequest(
        user_id=user_id, plan_id=plan.plan_id, currency=currency, **kwargs
    )


def bump_version_on_flush(session, subscription_id: str, times: int | None):
    """Simulate a concurrent writer by bumping the row version before our flush."""
    calls = {"count": 0}

    def before_flush(sync_session, flush_context, instances):
        calls["count"] += 1
        if times is None or calls["count"] <= times:
            sync_session.connection().execute(
                text(
                    "UPDATE pricing_subscriptions SET version = version + 1 "
                    "WHERE subscription_id = :id"
                ),
                {"id": subscription_id},
            )

    event.listen(session.sync_session, "before_flush", before_flush)
    return calls, before_flush


class TestCreateSubscription:
    """Test subscribing to plans."""

    async def test_create_active_subscription(self, service, plans, gateway, event_bus):
        """Test a plan without trial starts active, locks its price and is charged."""
        subscription = await service.create_subscription(request_for(plans["pro"]), APR_1)

        assert subscription.status == SubscriptionStatus.ACTIVE
        assert subscription.current_period_start == APR_1
        assert subscription.current_period_end == MAY_1
        assert subscription.unit_amount == Decimal("30.00")
        assert subscription.period_sequence == 1
        assert subscription.version == 1
        assert gateway.amounts == [Decimal("30.00")]

        charges = await service.charges.list_charges(subscription.subscription_id)
        assert [c.reason for c in charges] == [ChargeReason.INITIAL]
        assert charges[0].status == ChargeStatus.SUCCEEDED

        created = event_bus.events_of_type(PricingEvents.SUBSCRIPTION_CREATED)
        assert len(created) == 1
        assert created[0].payload["subscription_id"] == subscription.subscription_id

    async def test_create_trial_subscription(self, service, plan_factory, gateway):
        """Test a plan with trial days starts in trial without a charge."""
        plan = await plan_factory("trial-pro", trial_days=14)

        subscription = await service.create_subscription(request_for(plan), APR_1)

        assert subscription.status == SubscriptionStatus.TRIAL
        assert subscription.trial_ends_at == APR_15
        assert subscription.current_period_end == APR_15
        assert gateway.calls == []

    async def test_setup_fee_added_to_first_charge(self, service, plan_factory, gateway):
        """Test the setup fee is charged with the first payment."""
        plan = await plan_factory("onboarded", amount="30.00", setup_fee="5.00")

        await service.create_subscription(request_for(plan), APR_1)

        assert gateway.amounts == [Decimal("35.00")]

    async def test_plan_must_be_selectable(self, service, catalog, plans):
        """Test archived plans and unoffered periods are rejected."""
        await catalog.archive_plan(plans["starter"].plan_id)

        with pytest.raises(PlanNotSelectableError):
            await service.create_subscription(request_for(plans["starter"]), APR_1)
        with pytest.raises(PlanNotSelectableError):
            await service.create_subscription(
                request_for(plans["pro"], billing_period=BillingPeriod.YEARLY), APR_1
            )

    async def test_currency_must_have_price(self, service, plans):
        """Test an unsupported currency or missing price rejects the subscription."""
        with pytest.raises(UnsupportedCurrencyError):
            await service.create_subscription(
                SubscriptionCreateRequest(user_id="u", plan_id=plans["pro"].plan_id, currency="CHF"),
                APR_1,
            )
        with pytest.raises(PriceNotFoundError):
            await service.create_subscription(
                SubscriptionCreateRequest(user_id="u", plan_id=plans["pro"].plan_id, currency="EUR"),
                APR_1,
            )

    async def test_price_is_locked(self, service, catalog, plans, gateway):
        """Test later catalog changes do not alter a subscription's price until migrated."""
        subscription = await service.create_subscription(request_for(plans["pro"]), APR_1)
        base = await catalog.resolve_price(plans["pro"].plan_id, "USD", "monthly", APR_1)
        await catalog.end_price(base.price_point_id, APR_5)
        await catalog.schedule_price(
            plans["pro"].plan_id, "USD", BillingPeriod.MONTHLY, Decimal("35.00"), APR_5
        )

        renewed = await service.advance(subscription.subscription_id, MAY_1)
        assert renewed.unit_amount == Decimal("30.00")
        assert gateway.amounts == [Decimal("30.00"), Decimal("30.00")]

        migrated = await service.migrate_price(subscription.subscription_id, MAY_2)
        assert migrated.unit_amount == Decimal("35.00")
        assert migrated.price_point_id != base.price_point_id

    async def test_list_for_user(self, service, plans):
        """Test listing a user's subscriptions with and without ended ones."""
        first = await service.create_subscription(request_for(plans["pro"]), APR_1)
        await service.create_subscription(request_for(plans["starter"]), APR_1)
        await service.cancel(first.subscription_id, APR_5, at_period_end=False)

        everything = await service.list_for_user("user-1")
        live = await service.list_for_user("user-1", include_terminal=False)

        assert len(everything) == 2
        assert [s.plan_id for s in live] == [plans["starter"].plan_id]

    async def test_unknown_subscription(self, service):
        """Test operations on a missing subscription."""
        with pytest.raises(SubscriptionNotFoundError):
            await service.pause("sub_missing", APR_5)


class TestCouponsAtCreation:
    """Test coupons applied when subscribing."""

    async def test_first_payment_coupon(self, service, coupons, plans, gateway, event_bus):
        """Test a first-payment coupon discounts only the initial charge."""
        await coupons.create_coupon(
            CouponCreateRequest(
                code="SAVE50", discount_type=DiscountType.PERCENTAGE, discount_value=Decimal("50")
            )
        )

        subscription = await service.create_subscription(
            request_for(plans["pro"], coupon_code="save50"), APR_1
        )
        await service.advance(subscription.subscription_id, MAY_1)

        assert subscription.coupon_id is not None
        assert gateway.amounts == [Decimal("15.00"), Decimal("30.00")]
        assert (await coupons.get_coupon_by_code("SAVE50")).used_count == 1
        assert len(event_bus.events_of_type(PricingEvents.COUPON_REDEEMED)) == 1

    async def test_recurring_coupon(self, service, coupons, plans, gateway):
        """Test a recurring coupon discounts every renewal."""
        await coupons.create_coupon(
            CouponCreateRequest(
                code="LOYAL10",
                discount_type=DiscountType.PERCENTAGE,
                discount_value=Decimal("10"),
                first_payment_only=False,
            )
        )

        subscription = await service.create_subscription(
            request_for(plans["pro"], coupon_code="LOYAL10"), APR_1
        )
        await service.advance(subscription.subscription_id, MAY_1)

        assert gateway.amounts == [Decimal("27.00"), Decimal("27.00")]

    async def test_invalid_coupon_creates_nothing(self, service, coupons, plans, gateway):
        """Test an unusable coupon rejects the subscription entirely."""
        await coupons.create_coupon(
            CouponCreateRequest(
                code="ELITE-ONLY",
                discount_type=DiscountType.FIXED_AMOUNT,
                discount_value=Decimal("5"),
                applies_to_plans=[plans["elite"].plan_id],
            )
        )

        with pytest.raises(CouponInvalidError) as exc:
            await service.create_subscription(
                request_for(plans["pro"], coupon_code="ELITE-ONLY"), APR_1
            )

        assert exc.value.reason == "not-applicable-to-plan"
        assert await service.list_for_user("user-1") == []
        assert gateway.calls == []

    async def test_trial_conversion_applies_first_payment_coupon(
        self, service, coupons, plan_factory, gateway
    ):
        """Test the first payment after a trial gets the coupon and the setup fee."""
        plan = await plan_factory("trial-pro", amount="30.00", trial_days=14, setup_fee="5.00")
        await coupons.create_coupon(
            CouponCreateRequest(
                code="HALF", discount_type=DiscountType.PERCENTAGE, discount_value=Decimal("50")
            )
        )
        subscription = await service.create_subscription(
            request_for(plan, coupon_code="HALF"), APR_1
        )

        converted = await service.advance(subscription.subscription_id, APR_15)
        await service.advance(subscription.subscription_id, APR_15 + timedelta(days=30))

        assert converted.status == SubscriptionStatus.ACTIVE
        assert gateway.amounts == [Decimal("20.00"), Decimal("30.00")]


class TestChangePlan:
    """Test immediate plan changes with proration."""

    async def test_upgrade_prorates_unused_time(self, service, plans, gateway, event_bus):
        """Test pro 30.00 to elite 60.00 ten days into a 30-day period credits 20.00."""
        subscription = await service.create_subscription(request_for(plans["pro"]), APR_1)

        result = await service.change_plan(
            subscription.subscription_id, plans["elite"].plan_id, APR_11
        )

        assert result.proration.credit == Decimal("20.00")
        assert result.proration.new_charge == Decimal("40.00")
        assert result.proration.remainder == Decimal("0")
        assert result.charged_amount == Decimal("40.00")
        assert result.formatted_charge == "$40.00"
        assert result.subscription.plan_id == plans["elite"].plan_id
        assert result.subscription.unit_amount == Decimal("60.00")
        assert result.subscription.current_period_start == APR_11
        assert result.subscription.current_period_end == MAY_11
        assert gateway.amounts == [Decimal("30.00"), Decimal("40.00")]
        assert len(event_bus.events_of_type(PricingEvents.SUBSCRIPTION_PLAN_CHANGED)) == 1

    async def test_downgrade_forfeits_remainder(self, service, plans, gateway):
        """Test credit beyond the new price is forfeited by default."""
        subscription = await service.create_subscription(request_for(plans["elite"]), APR_1)

        result = await service.change_plan(
            subscription.subscription_id, plans["starter"].plan_id, APR_11
        )

        assert result.proration.credit == Decimal("40.00")
        assert result.proration.new_charge == Decimal("0.00")
        assert result.proration.remainder == Decimal("30.00")
        assert result.subscription.account_credit == Decimal("0")
        assert gateway.amounts == [Decimal("60.00")]

    async def test_downgrade_carries_remainder_forward(
        self, async_session, plans, gateway
    ):
        """Test the carry-forward policy applies leftover credit to later charges."""
        config = PricingConfig(
            currency=CurrencyConfig(supported_currencies=["USD"]),
            proration=ProrationConfig(remainder_policy=ProrationRemainderPolicy.CARRY_FORWARD),
        )
        service = SubscriptionService(async_session, gateway=gateway, config=config)
        subscription = await service.create_subscription(request_for(plans["elite"]), APR_1)

        result = await service.change_plan(
            subscription.subscription_id, plans["starter"].plan_id, APR_11
        )
        assert result.subscription.account_credit == Decimal("30.00")

        renewed = await service.advance(subscription.subscription_id, MAY_11)
        assert renewed.account_credit == Decimal("20.00")
        assert gateway.amounts == [Decimal("60.00")]

    async def test_trial_plan_change_keeps_trial(self, service, plan_factory, plans, gateway):
        """Test changing plan during a trial neither credits nor charges."""
        trial_plan = await plan_factory("trial-pro", trial_days=14)
        subscription = await service.create_subscription(request_for(trial_plan), APR_1)

        result = await service.change_plan(
            subscription.subscription_id, plans["elite"].plan_id, APR_5
        )

        assert result.charged_amount == Decimal("0")
        assert result.subscription.status == SubscriptionStatus.TRIAL
        assert result.subscription.trial_ends_at == APR_15
        assert gateway.calls == []

        await service.advance(subscription.subscription_id, APR_15)
        assert gateway.amounts == [Decimal("60.00")]

    async def test_paused_subscription_cannot_change_plan(self, service, plans):
        """Test plan changes require an active or trial subscription."""
        subscription = await service.create_subscription(request_for(plans["pro"]), APR_1)
        await service.pause(subscription.subscription_id, APR_5)

        with pytest.raises(InvalidTransitionError):
            await service.change_plan(subscription.subscription_id, plans["elite"].plan_id, APR_11)


class TestScheduledChanges:
    """Test plan changes deferred to the period end."""

    async def test_scheduled_downgrade_applies_at_period_end(
        self, service, plans, gateway, event_bus
    ):
        """Test the pending plan takes over at renewal with its own price."""
        subscription = await service.create_subscription(request_for(plans["pro"]), APR_1)

        scheduled = await service.schedule_downgrade(
            subscription.subscription_id, plans["starter"].plan_id, APR_11
        )
        assert scheduled.pending_plan_id == plans["starter"].plan_id
        assert scheduled.pending_effective_at == MAY_1
        assert scheduled.plan_id == plans["pro"].plan_id

        renewed = await service.advance(subscription.subscription_id, MAY_1)

        assert renewed.plan_id == plans["starter"].plan_id
        assert renewed.pending_plan_id is None
        assert renewed.unit_amount == Decimal("10.00")
        assert gateway.amounts == [Decimal("30.00"), Decimal("10.00")]
        changed = event_bus.events_of_type(PricingEvents.SUBSCRIPTION_PLAN_CHANGED)
        assert changed[0].payload["scheduled"] is True

    async def test_cancel_scheduled_change(self, service, plans):
        """Test a cancelled scheduled change leaves the plan as it was."""
        subscription = await service.create_subscription(request_for(plans["pro"]), APR_1)
        await service.schedule_downgrade(
            subscription.subscription_id, plans["starter"].plan_id, APR_11
        )

        cleared = await service.cancel_scheduled_change(subscription.subscription_id, APR_15)
        renewed = await service.advance(subscription.subscription_id, MAY_1)

        assert cleared.has_pending_change is False
        assert renewed.plan_id == plans["pro"].plan_id

        with pytest.raises(InvalidTransitionError):
            await service.cancel_scheduled_change(subscription.subscription_id, MAY_2)

    async def test_schedule_same_plan_rejected(self, service, plans):
        """Test scheduling a change to the current plan is refused."""
        subscription = await service.create_subscription(request_for(plans["pro"]), APR_1)

        with pytest.raises(PlanNotSelectableError):
            await service.schedule_downgrade(
                subscription.subscription_id, plans["pro"].plan_id, APR_11
            )

    async def test_unpriced_pending_plan_renews_on_current_plan(
        self, service, catalog, plans, gateway, event_bus
    ):
        """Test a pending plan without a price at the boundary is dropped, not retried forever."""
        subscription = await service.create_subscription(request_for(plans["pro"]), APR_1)
        await service.schedule_downgrade(
            subscription.subscription_id, plans["starter"].plan_id, APR_11
        )
        starter_price = await catalog.resolve_price(
            plans["starter"].plan_id, "USD", BillingPeriod.MONTHLY, APR_11
        )
        await catalog.end_price(starter_price.price_point_id, APR_20)

        renewed = await service.advance(subscription.subscription_id, MAY_2)
        again = await service.advance(subscription.subscription_id, MAY_2)

        assert renewed.status == SubscriptionStatus.ACTIVE
        assert renewed.plan_id == plans["pro"].plan_id
        assert renewed.unit_amount == Decimal("30.00")
        assert renewed.pending_plan_id is None
        assert renewed.current_period_start == MAY_1
        assert renewed.period_sequence == 2
        assert again.version == renewed.version
        assert gateway.amounts == [Decimal("30.00"), Decimal("30.00")]

        (failed,) = event_bus.events_of_type(PricingEvents.SUBSCRIPTION_SCHEDULED_CHANGE_FAILED)
        assert failed.payload["pending_plan_id"] == plans["starter"].plan_id
        assert failed.payload["error_code"] == "PRICE_NOT_FOUND"
        assert event_bus.events_of_type(PricingEvents.SUBSCRIPTION_PLAN_CHANGED) == []


class TestPauseResume:
    """Test pausing and resuming."""

    async def test_resume_shifts_period(self, service, plans):
        """Test the period is extended by the time spent paused."""
        subscription = await service.create_subscription(request_for(plans["pro"]), APR_1)

        paused = await service.pause(subscription.subscription_id, APR_11)
        resumed = await service.resume(subscription.subscription_id, APR_21)

        assert paused.status == SubscriptionStatus.PAUSED
        assert resumed.status == SubscriptionStatus.ACTIVE
        assert resumed.current_period_end == MAY_11
        assert resumed.paused_at is None

    async def test_automatic_resume(self, service, plans):
        """Test advance resumes a subscription whose resume date has passed."""
        subscription = await service.create_subscription(request_for(plans["pro"]), APR_1)
        await service.pause(subscription.subscription_id, APR_11, resume_at=APR_21)

        advanced = await service.advance(subscription.subscription_id, APR_25)

        assert advanced.status == SubscriptionStatus.ACTIVE
        assert advanced.current_period_end == MAY_11
        assert advanced.resume_at is None

    async def test_paused_trial_resumes_into_trial(
        self, service, plan_factory, gateway, event_bus
    ):
        """Test a trial paused and resumed still converts at its shifted trial end."""
        plan = await plan_factory("trial-pro", amount="30.00", trial_days=14)
        subscription = await service.create_subscription(request_for(plan), APR_1)

        await service.pause(subscription.subscription_id, APR_5)
        resumed = await service.resume(subscription.subscription_id, APR_11)

        assert resumed.status == SubscriptionStatus.TRIAL
        assert resumed.trial_ends_at == APR_21
        assert gateway.calls == []

        converted = await service.advance(subscription.subscription_id, APR_21)

        assert converted.status == SubscriptionStatus.ACTIVE
        assert converted.current_period_start == APR_21
        assert converted.current_period_end == datetime(2025, 5, 21, tzinfo=UTC)
        assert gateway.amounts == [Decimal("30.00")]
        charges = await service.charges.list_charges(subscription.subscription_id)
        assert [c.reason for c in charges] == [ChargeReason.TRIAL_CONVERSION]
        assert len(event_bus.events_of_type(PricingEvents.SUBSCRIPTION_TRIAL_ENDED)) == 1
        assert event_bus.events_of_type(PricingEvents.SUBSCRIPTION_RENEWED) == []

    async def test_pause_preconditions(self, service, plans):
        """Test invalid pause and resume requests."""
        subscription = await service.create_subscription(request_for(plans["pro"]), APR_1)

        with pytest.raises(InvalidTransitionError):
            await service.resume(subscription.subscription_id, APR_5)
        with pytest.raises(InvalidTransitionError):
            await service.pause(subscription.subscription_id, APR_11, resume_at=APR_5)

        await service.pause(subscription.subscription_id, APR_5)
        with pytest.raises(InvalidTransitionError):
            await service.pause(subscription.subscription_id, APR_11)


class TestCancellation:
    """Test cancelling and reactivating."""

    async def test_cancel_at_period_end(self, service, plans, gateway):
        """Test the subscription runs to its period end and is not renewed."""
        subscription = await service.create_subscription(request_for(plans["pro"]), APR_1)

        pending = await service.cancel(subscription.subscription_id, APR_11, reason="too pricey")
        ended = await service.advance(subscription.subscription_id, MAY_1)

        assert pending.status == SubscriptionStatus.ACTIVE
        assert pending.cancel_at_period_end is True
        assert ended.status == SubscriptionStatus.CANCELLED
        assert ended.ended_at == MAY_1
        assert ended.cancel_reason == "too pricey"
        assert gateway.amounts == [Decimal("30.00")]

    async def test_reactivate_before_period_end(self, service, plans, gateway):
        """Test reactivation undoes a pending cancellation."""
        subscription = await service.create_subscription(request_for(plans["pro"]), APR_1)
        await service.cancel(subscription.subscription_id, APR_11)

        reactivated = await service.reactivate(subscription.subscription_id, APR_15)
        renewed = await service.advance(subscription.subscription_id, MAY_1)

        assert reactivated.cancel_at_period_end is False
        assert renewed.status == SubscriptionStatus.ACTIVE
        assert renewed.period_sequence == 2

        with pytest.raises(InvalidTransitionError):
            await service.reactivate(subscription.subscription_id, MAY_2)

    async def test_immediate_cancel_is_terminal(self, service, plans, event_bus):
        """Test an immediately cancelled subscription accepts no further transitions."""
        subscription = await service.create_subscription(request_for(plans["pro"]), APR_1)

        cancelled = await service.cancel(subscription.subscription_id, APR_11, at_period_end=False)

        assert cancelled.status == SubscriptionStatus.CANCELLED
        assert cancelled.ended_at == APR_11
        for operation in (
            service.pause(subscription.subscription_id, APR_15),
            service.cancel(subscription.subscription_id, APR_15, at_period_end=False),
            service.extend(subscription.subscription_id, 3, "goodwill", APR_15),
        ):
            with pytest.raises(InvalidTransitionError):
                await operation

        after = await service.advance(subscription.subscription_id, JUL_1)
        assert after.status == SubscriptionStatus.CANCELLED
        assert after.version == cancelled.version

        events = event_bus.events_of_type(PricingEvents.SUBSCRIPTION_CANCELLED)
        assert len(events) == 1
        assert events[0].priority == EventPriority.HIGH

    async def test_trial_cancelled_at_trial_end(self, service, plan_factory, gateway):
        """Test a trial set to cancel ends at the trial end without a charge."""
        plan = await plan_factory("trial-pro", trial_days=14)
        subscription = await service.create_subscription(request_for(plan), APR_1)
        await service.cancel(subscription.subscription_id, APR_5)

        ended = await service.advance(subscription.subscription_id, APR_20)

        assert ended.status == SubscriptionStatus.CANCELLED
        assert ended.ended_at == APR_15
        assert gateway.calls == []


class TestPaymentStatus:
    """Test past-due handling."""

    async def test_past_due_and_recovery(self, service, plans, event_bus):
        """Test a past-due subscription returns to active on recovery."""
        subscription = await service.create_subscription(request_for(plans["pro"]), APR_1)

        past_due = await service.mark_past_due(subscription.subscription_id, APR_20)
        recovered = await service.record_payment_recovered(subscription.subscription_id, APR_21)

        assert past_due.status == SubscriptionStatus.PAST_DUE
        assert recovered.status == SubscriptionStatus.ACTIVE
        assert len(event_bus.events_of_type(PricingEvents.SUBSCRIPTION_RECOVERED)) == 1

    async def test_past_due_expires_after_grace(self, service, plans):
        """Test a past-due subscription expires once the grace period passes."""
        subscription = await service.create_subscription(request_for(plans["pro"]), APR_1)
        await service.mark_past_due(subscription.subscription_id, APR_20)

        within_grace = await service.advance(subscription.subscription_id, MAY_2)
        expired = await service.advance(subscription.subscription_id, MAY_4)

        assert within_grace.status == SubscriptionStatus.PAST_DUE
        assert expired.status == SubscriptionStatus.EXPIRED
        assert expired.ended_at == MAY_4

    async def test_payment_exhausted(self, service, plans):
        """Test exhausted payment retries end the subscription."""
        first = await service.create_subscription(request_for(plans["pro"]), APR_1)
        second = await service.create_subscription(request_for(plans["pro"], user_id="user-2"), APR_1)
        for subscription in (first, second):
            await service.mark_past_due(subscription.subscription_id, APR_20)

        cancelled = await service.record_payment_exhausted(first.subscription_id, APR_25)
        expired = await service.record_payment_exhausted(
            second.subscription_id, APR_25, terminal=SubscriptionStatus.EXPIRED
        )

        assert cancelled.status == SubscriptionStatus.CANCELLED
        assert cancelled.cancel_reason == "payment_failed"
        assert expired.status == SubscriptionStatus.EXPIRED

        with pytest.raises(InvalidTransitionError):
            await service.record_payment_exhausted(
                first.subscription_id, APR_25, terminal=SubscriptionStatus.ACTIVE
            )

    async def test_mark_past_due_requires_active(self, service, plans):
        """Test only active subscriptions can become past due."""
        subscription = await service.create_subscription(request_for(plans["pro"]), APR_1)
        await service.pause(subscription.subscription_id, APR_5)

        with pytest.raises(InvalidTransitionError):
            await service.mark_past_due(subscription.subscription_id, APR_11)


class TestAdvance:
    """Test period advance."""

    async def test_renewal(self, service, plans, gateway, event_bus):
        """Test a due subscription renews into the next period and is charged."""
        subscription = await service.create_subscription(request_for(plans["pro"]), APR_1)

        renewed = await service.advance(subscription.subscription_id, MAY_1)

        assert renewed.current_period_start == MAY_1
        assert renewed.current_period_end == datetime(2025, 6, 1, tzinfo=UTC)
        assert renewed.period_sequence == 2
        assert gateway.amounts == [Decimal("30.00"), Decimal("30.00")]
        charges = await service.charges.list_charges(subscription.subscription_id)
        assert [c.reason for c in charges] == [ChargeReason.INITIAL, ChargeReason.RENEWAL]
        assert [c.attempted_at for c in charges] == [APR_1, MAY_1]
        assert len(event_bus.events_of_type(PricingEvents.SUBSCRIPTION_RENEWED)) == 1

    async def test_advance_is_idempotent(self, service, plans, gateway):
        """Test advancing twice at the same instant changes nothing the second time."""
        subscription = await service.create_subscription(request_for(plans["pro"]), APR_1)

        first = await service.advance(subscription.subscription_id, MAY_1)
        second = await service.advance(subscription.subscription_id, MAY_1)

        assert second.version == first.version
        assert second.period_sequence == 2
        assert len(gateway.calls) == 2

    async def test_advance_before_period_end_does_nothing(self, service, plans):
        """Test a subscription that is not due is left alone."""
        subscription = await service.create_subscription(request_for(plans["pro"]), APR_1)

        advanced = await service.advance(subscription.subscription_id, APR_25)

        assert advanced.version == subscription.version
        assert advanced.current_period_end == MAY_1

    async def test_catch_up_over_several_periods(self, service, plans, gateway):
        """Test a subscription several periods behind renews once per missed period."""
        subscription = await service.create_subscription(request_for(plans["pro"]), APR_1)

        advanced = await service.advance(subscription.subscription_id, JUL_15)

        assert advanced.period_sequence == 4
        assert advanced.current_period_start == JUL_1
        assert advanced.current_period_end == AUG_1
        assert len(gateway.calls) == 4

    async def test_month_end_anchor_survives_short_months(self, service, plans, gateway):
        """Test a Jan 31 start renews Feb 28, then Mar 31, then Apr 30."""
        jan_31 = datetime(2025, 1, 31, tzinfo=UTC)
        feb_28 = datetime(2025, 2, 28, tzinfo=UTC)
        mar_31 = datetime(2025, 3, 31, tzinfo=UTC)
        subscription = await service.create_subscription(request_for(plans["pro"]), jan_31)
        assert subscription.current_period_end == feb_28
        assert subscription.billing_anchor_at == jan_31

        march = await service.advance(
            subscription.subscription_id, datetime(2025, 3, 1, tzinfo=UTC)
        )
        april = await service.advance(
            subscription.subscription_id, datetime(2025, 4, 1, tzinfo=UTC)
        )

        assert (march.current_period_start, march.current_period_end) == (feb_28, mar_31)
        assert april.current_period_start == mar_31
        assert april.current_period_end == datetime(2025, 4, 30, tzinfo=UTC)
        assert april.period_sequence == 3
        assert len(gateway.calls) == 3

    async def test_catch_up_charges_use_advance_time(self, service, plans):
        """Test charges are stamped with the instant passed to the operation."""
        subscription = await service.create_subscription(request_for(plans["pro"]), APR_1)

        await service.advance(subscription.subscription_id, JUL_15)

        charges = await service.charges.list_charges(subscription.subscription_id)
        assert [c.attempted_at for c in charges] == [APR_1, JUL_15, JUL_15, JUL_15]

    async def test_trial_conversion(self, service, plan_factory, gateway, event_bus):
        """Test the trial converts to a paid period with the setup fee."""
        plan = await plan_factory("trial-pro", amount="30.00", trial_days=14, setup_fee="5.00")
        subscription = await service.create_subscription(request_for(plan), APR_1)

        converted = await service.advance(subscription.subscription_id, APR_15)

        assert converted.status == SubscriptionStatus.ACTIVE
        assert converted.current_period_start == APR_15
        assert converted.current_period_end == datetime(2025, 5, 15, tzinfo=UTC)
        assert converted.period_sequence == 2
        assert gateway.amounts == [Decimal("35.00")]
        charges = await service.charges.list_charges(subscription.subscription_id)
        assert charges[0].reason == ChargeReason.TRIAL_CONVERSION
        assert len(event_bus.events_of_type(PricingEvents.SUBSCRIPTION_TRIAL_ENDED)) == 1

    async def test_non_renewing_subscription_expires(self, service, plans, gateway):
        """Test a subscription without auto-renew expires at its period end."""
        subscription = await service.create_subscription(
            request_for(plans["pro"], auto_renew=False), APR_1
        )

        expired = await service.advance(subscription.subscription_id, MAY_1)

        assert expired.status == SubscriptionStatus.EXPIRED
        assert expired.ended_at == MAY_1
        assert len(gateway.calls) == 1

    async def test_one_time_plan_never_renews(self, service, plan_factory):
        """Test one-time plans are created without auto-renew."""
        plan = await plan_factory("event-pass", kind=PlanKind.ONE_TIME)

        subscription = await service.create_subscription(request_for(plan), APR_1)
        expired = await service.advance(subscription.subscription_id, MAY_1)

        assert subscription.auto_renew is False
        assert expired.status == SubscriptionStatus.EXPIRED


class TestCharges:
    """Test post-commit gateway charges."""

    async def test_declined_charge_keeps_transition(self, service, plans, gateway, event_bus):
        """Test a declined renewal charge is recorded without undoing the renewal."""
        subscription = await service.create_subscription(request_for(plans["pro"]), APR_1)
        gateway.decline("Card declined")

        renewed = await service.advance(subscription.subscription_id, MAY_1)

        assert renewed.status == SubscriptionStatus.ACTIVE
        assert renewed.period_sequence == 2
        charges = await service.charges.list_charges(subscription.subscription_id)
        assert [c.status for c in charges] == [ChargeStatus.SUCCEEDED, ChargeStatus.FAILED]
        assert charges[1].error_message == "Card declined"
        failed = event_bus.events_of_type(PricingEvents.CHARGE_FAILED)
        assert len(failed) == 1
        assert failed[0].priority == EventPriority.HIGH

    async def test_unexpected_gateway_error_recorded(self, service, plans, gateway):
        """Test gateway exceptions of any kind are recorded as failed charges."""
        gateway.fail_with = RuntimeError("connection reset")

        subscription = await service.create_subscription(request_for(plans["pro"]), APR_1)

        charges = await service.charges.list_charges(subscription.subscription_id)
        assert charges[0].status == ChargeStatus.FAILED
        assert charges[0].error_message == "connection reset"

    async def test_without_gateway_no_charge_recorded(self, async_session, plans, pricing_config):
        """Test transitions work when no gateway is configured."""
        service = SubscriptionService(async_session, gateway=None, config=pricing_config)

        subscription = await service.create_subscription(request_for(plans["pro"]), APR_1)

        assert subscription.status == SubscriptionStatus.ACTIVE
        assert await service.charges.list_charges(subscription.subscription_id) == []


class TestRefundsAndExtensions:
    """Test refund quotes and period extensions."""

    async def test_refund_quotes(self, service, plans):
        """Test full, prorated and partial refund quotes."""
        subscription = await service.create_subscription(request_for(plans["pro"]), APR_1)
        subscription_id = subscription.subscription_id

        full = await service.quote_refund(subscription_id, RefundType.FULL, APR_11)
        prorated = await service.quote_refund(subscription_id, RefundType.PRORATED, APR_11)
        partial = await service.quote_refund(
            subscription_id, RefundType.PARTIAL, APR_11, amount=Decimal("12.50")
        )

        assert full.amount == Decimal("30.00")
        assert prorated.amount == Decimal("20.00")
        assert partial.amount == Decimal("12.50")
        assert full.currency == "USD"
        assert full.formatted_amount == "$30.00"
        assert prorated.formatted_amount == "$20.00"

        with pytest.raises(InvalidRefundError):
            await service.quote_refund(
                subscription_id, RefundType.PARTIAL, APR_11, amount=Decimal("40.00")
            )
        with pytest.raises(InvalidRefundError):
            await service.quote_refund(subscription_id, RefundType.PARTIAL, APR_11)

    async def test_amounts_formatted_in_configured_locale(
        self, async_session, plan_factory, gateway
    ):
        """Test refund quotes are rendered with the configured locale."""
        config = PricingConfig(
            currency=CurrencyConfig(supported_currencies=["EUR"], default_locale="de_DE"),
        )
        service = SubscriptionService(async_session, gateway=gateway, config=config)
        plan = await plan_factory("euro-pro", amount="1234.50", currency="EUR")
        subscription = await service.create_subscription(
            request_for(plan, currency="EUR"), APR_1
        )

        quote = await service.quote_refund(subscription.subscription_id, RefundType.FULL, APR_11)

        assert quote.amount == Decimal("1234.50")
        assert "1.234,50" in quote.formatted_amount
        assert "€" in quote.formatted_amount

    async def test_trial_refund_is_zero(self, service, plan_factory):
        """Test nothing is refundable during a trial."""
        plan = await plan_factory("trial-pro", trial_days=14)
        subscription = await service.create_subscription(request_for(plan), APR_1)

        quote = await service.quote_refund(subscription.subscription_id, RefundType.FULL, APR_5)

        assert quote.amount == Decimal("0")

    async def test_extend_records_history(self, service, plans):
        """Test extensions push the period end and are logged in metadata."""
        subscription = await service.create_subscription(request_for(plans["pro"]), APR_1)

        extended = await service.extend(subscription.subscription_id, 7, "outage", APR_11)

        assert extended.current_period_end == MAY_1 + timedelta(days=7)
        history = extended.metadata["extensions"]
        assert len(history) == 1
        assert history[0]["days"] == 7
        assert history[0]["reason"] == "outage"
        assert history[0]["previous_end"] == MAY_1.isoformat()

        with pytest.raises(InvalidTransitionError):
            await service.extend(subscription.subscription_id, 0, "nothing", APR_11)


class TestOptimisticLocking:
    """Test concurrent modification handling."""

    async def test_conflict_is_retried(self, service, plans, async_session):
        """Test a single concurrent write is absorbed by reloading and retrying."""
        subscription = await service.create_subscription(request_for(plans["pro"]), APR_1)
        calls, listener = bump_version_on_flush(
            async_session, subscription.subscription_id, times=1
        )

        try:
            paused = await service.pause(subscription.subscription_id, APR_5)
        finally:
            event.remove(async_session.sync_session, "before_flush", listener)

        assert paused.status == SubscriptionStatus.PAUSED
        assert paused.version == 2
        assert calls["count"] == 2

    async def test_persistent_conflict_raises(self, service, plans, async_session, pricing_config):
        """Test repeated conflicts surface as a retryable ConcurrencyConflictError."""
        subscription = await service.create_subscription(request_for(plans["pro"]), APR_1)
        calls, listener = bump_version_on_flush(
            async_session, subscription.subscription_id, times=None
        )

        try:
            with pytest.raises(ConcurrencyConflictError) as exc:
                await service.pause(subscription.subscription_id, APR_5)
        finally:
            event.remove(async_session.sync_session, "before_flush", listener)

        assert exc.value.retryable is True
        assert exc.value.context["attempts"] == pricing_config.concurrency.max_attempts
        assert calls["count"] == pricing_config.concurrency.max_attempts

        current = await service.get_subscription(subscription.subscription_id)
        assert current.status == SubscriptionStatus.ACTIVE
        assert current.version == 1
