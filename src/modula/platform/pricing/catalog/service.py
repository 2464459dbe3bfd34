"""
Plan and price catalog service.

Resolves the single price point that applies to a (plan, currency, billing
period) at an instant, and manages plans, features, limits and price
windows. Price windows are half-open ``[effective_from, effective_until)``;
an unbounded price point acts as the fallback when no window applies.
"""

from datetime import datetime, timedelta
from decimal import Decimal

import structlog
from sqlalchemy import delete, select
from sqlalchemy.ext.asyncio import AsyncSession

from modula.platform.logging import log_audit_event
from modula.platform.pricing.catalog.models import (
    FeatureType,
    ImportMode,
    LimitEnforcement,
    Plan,
    PlanAnalytics,
    PlanComparison,
    PlanCreateRequest,
    PlanExport,
    PlanFeature,
    PlanFeatureInput,
    PlanImportError,
    PlanImportResult,
    PlanLimit,
    PlanLimitInput,
    PlanStatus,
    PricePoint,
    PricePointInput,
)
from modula.platform.pricing.config import PricingConfig, get_pricing_config
from modula.platform.pricing.exceptions import (
    AmbiguousPriceError,
    DuplicatePlanError,
    InvalidPriceError,
    PlanNotFoundError,
    PlanNotSelectableError,
    PriceNotFoundError,
    PricePointNotFoundError,
    PriceWindowOverlapError,
    PricingEngineError,
    UnsupportedCurrencyError,
)
from modula.platform.pricing.models import (
    PlanFeatureTable,
    PlanLimitTable,
    PlanTable,
    PricePointTable,
    SubscriptionTable,
)
from modula.platform.pricing.money_utils import (
    ZERO,
    CurrencyService,
    MoneyCurrencyService,
    round_half_up,
)
from modula.platform.pricing.periods import BillingPeriod, period_months

logger = structlog.get_logger(__name__)

CHURN_WINDOW_DAYS = 30
LIVE_STATUSES = ("trial", "active", "past_due")
PAYING_STATUSES = ("active", "past_due")
ENDED_STATUSES = ("cancelled", "expired")


def _windows_overlap(
    start_a: datetime | None,
    end_a: datetime | None,
    start_b: datetime | None,
    end_b: datetime | None,
) -> bool:
    """Half-open overlap test; ``None`` bounds are open-ended."""
    a_starts_before_b_ends = end_b is None or start_a is None or start_a < end_b
    b_starts_before_a_ends = end_a is None or start_b is None or start_b < end_a
    return a_starts_before_b_ends and b_starts_before_a_ends


class PriceCatalogService:
    """Service for plans, price points and plan limits."""

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
    # Plans
    # ========================================

    async def create_plan(self, request: PlanCreateRequest) -> Plan:
        """Create a draft plan together with its features and limits."""
        existing = await self.db.execute(
            select(PlanTable.plan_id).where(PlanTable.slug == request.slug)
        )
        if existing.scalar_one_or_none() is not None:
            raise DuplicatePlanError(f"Plan slug '{request.slug}' already exists", slug=request.slug)

        plan = PlanTable(
            slug=request.slug,
            kind=request.kind.value,
            trial_days=request.trial_days,
            status=PlanStatus.DRAFT.value,
            billing_periods=[period.value for period in request.billing_periods],
            sort_order=request.sort_order,
            metadata_json=request.metadata,
        )
        self.db.add(plan)
        await self.db.flush()

        for position, feature in enumerate(request.features):
            self.db.add(
                PlanFeatureTable(
                    plan_id=plan.plan_id,
                    feature_key=feature.key,
                    value=feature.value,
                    feature_type=feature.feature_type.value,
                    is_highlighted=feature.is_highlighted,
                    sort_order=position,
                )
            )
        for resource, limit in request.limits.items():
            self.db.add(
                PlanLimitTable(
                    plan_id=plan.plan_id,
                    resource=resource,
                    quota=limit.quota,
                    reset_period=limit.reset_period.value,
                    enforcement=limit.enforcement.value,
                )
            )

        await self.db.commit()

        logger.info("Plan created", plan_id=plan.plan_id, slug=plan.slug, kind=plan.kind)
        log_audit_event(
            action="plan.created",
            category="pricing",
            resource_type="plan",
            resource_id=plan.plan_id,
            slug=plan.slug,
        )
        return Plan.model_validate(plan)

    async def _get_plan_row(self, plan_id: str) -> PlanTable:
        plan = await self.db.get(PlanTable, plan_id)
        if plan is None:
            raise PlanNotFoundError(f"Plan {plan_id} not found", plan_id=plan_id)
        return plan

    async def get_plan(self, plan_id: str) -> Plan:
        """Get a plan by id, including archived plans."""
        return Plan.model_validate(await self._get_plan_row(plan_id))

    async def get_plan_by_slug(self, slug: str) -> Plan:
        result = await self.db.execute(select(PlanTable).where(PlanTable.slug == slug))
        plan = result.scalar_one_or_none()
        if plan is None:
            raise PlanNotFoundError(f"Plan '{slug}' not found", slug=slug)
        return Plan.model_validate(plan)

    async def activate_plan(self, plan_id: str) -> Plan:
        """Make a draft plan selectable. Archived plans stay archived."""
        plan = await self._get_plan_row(plan_id)
        if plan.status == PlanStatus.ARCHIVED.value:
            raise PlanNotSelectableError(
                f"Plan {plan_id} is archived", plan_id=plan_id, reason="archived"
            )
        plan.status = PlanStatus.ACTIVE.value
        await self.db.commit()

        logger.info("Plan activated", plan_id=plan_id)
        log_audit_event(
            action="plan.activated", category="pricing", resource_type="plan", resource_id=plan_id
        )
        return Plan.model_validate(plan)

    async def archive_plan(self, plan_id: str) -> Plan:
        """Archive a plan. Existing subscriptions keep referencing it."""
        plan = await self._get_plan_row(plan_id)
        plan.status = PlanStatus.ARCHIVED.value
        await self.db.commit()

        logger.info("Plan archived", plan_id=plan_id)
        log_audit_event(
            action="plan.archived", category="pricing", resource_type="plan", resource_id=plan_id
        )
        return Plan.model_validate(plan)

    async def list_selectable_plans(self) -> list[Plan]:
        """Active plans in display order."""
        result = await self.db.execute(
            select(PlanTable)
            .where(PlanTable.status == PlanStatus.ACTIVE.value)
            .order_by(PlanTable.sort_order, PlanTable.slug)
        )
        return [Plan.model_validate(plan) for plan in result.scalars().all()]

    async def ensure_selectable(self, plan_id: str, billing_period: BillingPeriod | str) -> Plan:
        """Return the plan if it can be chosen for a new subscription in this period."""
        plan = await self.get_plan(plan_id)
        if not plan.is_selectable:
            raise PlanNotSelectableError(
                f"Plan {plan.slug} is {plan.status.value}", plan_id=plan_id, reason=plan.status.value
            )
        if not plan.offers(billing_period):
            raise PlanNotSelectableError(
                f"Plan {plan.slug} is not offered {BillingPeriod(billing_period).value}",
                plan_id=plan_id,
                reason="billing-period-not-offered",
            )
        return plan

    # ========================================
    # Features
    # ========================================

    async def add_feature(
        self,
        plan_id: str,
        feature_key: str,
        value: str | None = None,
        feature_type: FeatureType = FeatureType.BOOLEAN,
        is_highlighted: bool = False,
    ) -> PlanFeature:
        """Attach a feature to a plan, replacing any existing value for the key."""
        await self._get_plan_row(plan_id)

        result = await self.db.execute(
            select(PlanFeatureTable).where(
                PlanFeatureTable.plan_id == plan_id, PlanFeatureTable.feature_key == feature_key
            )
        )
        feature = result.scalar_one_or_none()
        if feature is None:
            count_result = await self.db.execute(
                select(PlanFeatureTable.feature_id).where(PlanFeatureTable.plan_id == plan_id)
            )
            feature = PlanFeatureTable(
                plan_id=plan_id,
                feature_key=feature_key,
                sort_order=len(count_result.all()),
            )
            self.db.add(feature)

        feature.value = value
        feature.feature_type = feature_type.value
        feature.is_highlighted = is_highlighted
        await self.db.commit()

        logger.info("Plan feature set", plan_id=plan_id, feature_key=feature_key)
        return PlanFeature.model_validate(feature)

    async def list_features(self, plan_id: str) -> list[PlanFeature]:
        result = await self.db.execute(
            select(PlanFeatureTable)
            .where(PlanFeatureTable.plan_id == plan_id)
            .order_by(PlanFeatureTable.sort_order)
        )
        return [PlanFeature.model_validate(feature) for feature in result.scalars().all()]

    async def has_feature(self, plan_id: str, feature_key: str) -> bool:
        """A boolean feature counts only when its value is truthy."""
        result = await self.db.execute(
            select(PlanFeatureTable).where(
                PlanFeatureTable.plan_id == plan_id, PlanFeatureTable.feature_key == feature_key
            )
        )
        feature = result.scalar_one_or_none()
        if feature is None:
            return False
        if feature.feature_type == FeatureType.BOOLEAN.value:
            return (feature.value or "true").lower() not in ("false", "0", "no")
        return True

    async def compare_plans(self, plan_ids: list[str]) -> PlanComparison:
        """Feature matrix keyed by feature, then plan slug."""
        result = await self.db.execute(
            select(PlanTable)
            .where(PlanTable.plan_id.in_(plan_ids))
            .order_by(PlanTable.sort_order, PlanTable.slug)
        )
        plans = [Plan.model_validate(plan) for plan in result.scalars().all()]

        features_by_plan: dict[str, dict[str, str | None]] = {}
        feature_keys: list[str] = []
        for plan in plans:
            features = await self.list_features(plan.plan_id)
            features_by_plan[plan.plan_id] = {f.feature_key: f.value for f in features}
            for feature in features:
                if feature.feature_key not in feature_keys:
                    feature_keys.append(feature.feature_key)

        matrix: dict[str, dict[str, str]] = {}
        for key in feature_keys:
            matrix[key] = {}
            for plan in plans:
                value = features_by_plan[plan.plan_id].get(key)
                matrix[key][plan.slug] = value if value is not None else "-"

        return PlanComparison(plans=plans, features_matrix=matrix)

    async def clone_plan(self, plan_id: str, new_slug: str) -> Plan:
        """
        Copy a plan under a new slug as a draft.

        Features and limits are copied as-is. Only price points whose
        window is still open are carried over.
        """
        source = await self._get_plan_row(plan_id)

        existing = await self.db.execute(select(PlanTable.plan_id).where(PlanTable.slug == new_slug))
        if existing.scalar_one_or_none() is not None:
            raise DuplicatePlanError(f"Plan slug '{new_slug}' already exists", slug=new_slug)

        clone = PlanTable(
            slug=new_slug,
            kind=source.kind,
            trial_days=source.trial_days,
            status=PlanStatus.DRAFT.value,
            billing_periods=list(source.billing_periods),
            sort_order=source.sort_order,
            metadata_json=dict(source.metadata_json),
        )
        self.db.add(clone)
        await self.db.flush()

        features = await self.db.execute(
            select(PlanFeatureTable).where(PlanFeatureTable.plan_id == plan_id)
        )
        for feature in features.scalars().all():
            self.db.add(
                PlanFeatureTable(
                    plan_id=clone.plan_id,
                    feature_key=feature.feature_key,
                    value=feature.value,
                    feature_type=feature.feature_type,
                    is_highlighted=feature.is_highlighted,
                    sort_order=feature.sort_order,
                )
            )

        limits = await self.db.execute(select(PlanLimitTable).where(PlanLimitTable.plan_id == plan_id))
        for limit in limits.scalars().all():
            self.db.add(
                PlanLimitTable(
                    plan_id=clone.plan_id,
                    resource=limit.resource,
                    quota=limit.quota,
                    reset_period=limit.reset_period,
                    enforcement=limit.enforcement,
                )
            )

        prices = await self.db.execute(
            select(PricePointTable).where(
                PricePointTable.plan_id == plan_id, PricePointTable.effective_until.is_(None)
            )
        )
        for price in prices.scalars().all():
            self.db.add(
                PricePointTable(
                    plan_id=clone.plan_id,
                    currency=price.currency,
                    billing_period=price.billing_period,
                    amount=price.amount,
                    compare_at_amount=price.compare_at_amount,
                    setup_fee=price.setup_fee,
                    effective_from=price.effective_from,
                    effective_until=None,
                )
            )

        await self.db.commit()

        logger.info("Plan cloned", source_plan_id=plan_id, plan_id=clone.plan_id, slug=new_slug)
        log_audit_event(
            action="plan.cloned",
            category="pricing",
            resource_type="plan",
            resource_id=clone.plan_id,
            source_plan_id=plan_id,
        )
        return Plan.model_validate(clone)

    # ========================================
    # Limits
    # ========================================

    async def attach_limit(
        self,
        plan_id: str,
        resource: str,
        quota: int | None,
        period: BillingPeriod | str = BillingPeriod.MONTHLY,
        enforcement: LimitEnforcement | str = LimitEnforcement.ADVISORY,
    ) -> PlanLimit:
        """Create or replace the quota for a resource on a plan."""
        await self._get_plan_row(plan_id)
        if quota is not None and quota < 0:
            raise InvalidPriceError(
                "Quota must be non-negative", validation_errors={"quota": quota}
            )

        result = await self.db.execute(
            select(PlanLimitTable).where(
                PlanLimitTable.plan_id == plan_id, PlanLimitTable.resource == resource
            )
        )
        limit = result.scalar_one_or_none()
        if limit is None:
            limit = PlanLimitTable(plan_id=plan_id, resource=resource)
            self.db.add(limit)

        limit.quota = quota
        limit.reset_period = BillingPeriod(period).value
        limit.enforcement = LimitEnforcement(enforcement).value
        await self.db.commit()

        logger.info(
            "Plan limit attached",
            plan_id=plan_id,
            resource=resource,
            quota=quota,
            enforcement=limit.enforcement,
        )
        return PlanLimit.model_validate(limit)

    async def get_limit(self, plan_id: str, resource: str) -> PlanLimit:
        """Limit for a resource; a resource without a limit row is unlimited."""
        result = await self.db.execute(
            select(PlanLimitTable).where(
                PlanLimitTable.plan_id == plan_id, PlanLimitTable.resource == resource
            )
        )
        limit = result.scalar_one_or_none()
        if limit is None:
            return PlanLimit(plan_id=plan_id, resource=resource, quota=None)
        return PlanLimit.model_validate(limit)

    async def list_limits(self, plan_id: str) -> list[PlanLimit]:
        result = await self.db.execute(
            select(PlanLimitTable)
            .where(PlanLimitTable.plan_id == plan_id)
            .order_by(PlanLimitTable.resource)
        )
        return [PlanLimit.model_validate(limit) for limit in result.scalars().all()]

    # ========================================
    # Prices
    # ========================================

    def validate_currency(self, currency: str) -> str:
        """Upper-cased currency code, or ``UnsupportedCurrencyError``."""
        code = currency.upper()
        if not self.currency_service.currency_exists(code):
            raise UnsupportedCurrencyError(f"Unsupported currency {currency}", currency=currency)
        return code

    @staticmethod
    def _validate_amounts(
        amount: Decimal, compare_at_amount: Decimal | None, setup_fee: Decimal | None
    ) -> None:
        errors = {}
        if amount < 0:
            errors["amount"] = str(amount)
        if compare_at_amount is not None and compare_at_amount < 0:
            errors["compare_at_amount"] = str(compare_at_amount)
        if setup_fee is not None and setup_fee < 0:
            errors["setup_fee"] = str(setup_fee)
        if errors:
            raise InvalidPriceError("Price amounts must be non-negative", validation_errors=errors)

    async def _price_points_for(
        self, plan_id: str, currency: str, billing_period: BillingPeriod
    ) -> list[PricePointTable]:
        result = await self.db.execute(
            select(PricePointTable).where(
                PricePointTable.plan_id == plan_id,
                PricePointTable.currency == currency,
                PricePointTable.billing_period == billing_period.value,
            )
        )
        return list(result.scalars().all())

    async def _prepare_price(
        self, plan_id: str, currency: str, billing_period: BillingPeriod | str
    ) -> tuple[str, BillingPeriod]:
        plan = await self.get_plan(plan_id)
        period = BillingPeriod(billing_period)
        if not plan.offers(period):
            raise PlanNotSelectableError(
                f"Plan {plan.slug} is not offered {period.value}",
                plan_id=plan_id,
                reason="billing-period-not-offered",
            )
        return self.validate_currency(currency), period

    async def schedule_price(
        self,
        plan_id: str,
        currency: str,
        billing_period: BillingPeriod | str,
        amount: Decimal,
        effective_from: datetime,
        effective_until: datetime | None = None,
        compare_at_amount: Decimal | None = None,
        setup_fee: Decimal | None = None,
    ) -> PricePoint:
        """
        Add a time-bounded price point.

        The window must not overlap any existing windowed price point for the
        same plan, currency and period. Overlaps are rejected, never merged;
        to change a price, end the current window first and then schedule
        the new one from that instant.
        """
        code, period = await self._prepare_price(plan_id, currency, billing_period)
        self._validate_amounts(amount, compare_at_amount, setup_fee)
        if effective_until is not None and effective_until <= effective_from:
            raise InvalidPriceError(
                "effective_until must be after effective_from",
                validation_errors={
                    "effective_from": effective_from.isoformat(),
                    "effective_until": effective_until.isoformat(),
                },
            )

        for existing in await self._price_points_for(plan_id, code, period):
            if existing.effective_from is None and existing.effective_until is None:
                continue
            if _windows_overlap(
                effective_from,
                effective_until,
                existing.effective_from,
                existing.effective_until,
            ):
                raise PriceWindowOverlapError(
                    f"Price window overlaps price point {existing.price_point_id}",
                    conflicting_price_point_id=existing.price_point_id,
                )

        price = PricePointTable(
            plan_id=plan_id,
            currency=code,
            billing_period=period.value,
            amount=amount,
            compare_at_amount=compare_at_amount,
            setup_fee=setup_fee,
            effective_from=effective_from,
            effective_until=effective_until,
        )
        self.db.add(price)
        await self.db.commit()

        logger.info(
            "Price scheduled",
            plan_id=plan_id,
            price_point_id=price.price_point_id,
            currency=code,
            billing_period=period.value,
            amount=str(amount),
            effective_from=effective_from.isoformat(),
            effective_until=effective_until.isoformat() if effective_until else None,
        )
        log_audit_event(
            action="price.scheduled",
            category="pricing",
            resource_type="price_point",
            resource_id=price.price_point_id,
            plan_id=plan_id,
        )
        return PricePoint.model_validate(price)

    async def set_base_price(
        self,
        plan_id: str,
        currency: str,
        billing_period: BillingPeriod | str,
        amount: Decimal,
        compare_at_amount: Decimal | None = None,
        setup_fee: Decimal | None = None,
    ) -> PricePoint:
        """Add the unbounded fallback price; only one may exist per key."""
        code, period = await self._prepare_price(plan_id, currency, billing_period)
        self._validate_amounts(amount, compare_at_amount, setup_fee)

        for existing in await self._price_points_for(plan_id, code, period):
            if existing.effective_from is None and existing.effective_until is None:
                raise PriceWindowOverlapError(
                    f"Base price already exists as {existing.price_point_id}",
                    conflicting_price_point_id=existing.price_point_id,
                )

        price = PricePointTable(
            plan_id=plan_id,
            currency=code,
            billing_period=period.value,
            amount=amount,
            compare_at_amount=compare_at_amount,
            setup_fee=setup_fee,
        )
        self.db.add(price)
        await self.db.commit()

        logger.info(
            "Base price set",
            plan_id=plan_id,
            price_point_id=price.price_point_id,
            currency=code,
            billing_period=period.value,
            amount=str(amount),
        )
        return PricePoint.model_validate(price)

    async def end_price(self, price_point_id: str, until: datetime) -> PricePoint:
        """Close a price point's window at ``until``."""
        price = await self.db.get(PricePointTable, price_point_id)
        if price is None:
            raise PricePointNotFoundError(
                f"Price point {price_point_id} not found", price_point_id=price_point_id
            )
        if price.effective_from is not None and until <= price.effective_from:
            raise InvalidPriceError(
                "until must be after effective_from",
                price_point_id=price_point_id,
                validation_errors={"until": until.isoformat()},
            )
        if price.effective_until is not None and until > price.effective_until:
            raise InvalidPriceError(
                "A window can only be shortened",
                price_point_id=price_point_id,
                validation_errors={
                    "until": until.isoformat(),
                    "effective_until": price.effective_until.isoformat(),
                },
            )

        if price.effective_from is None and price.effective_until is None:
            # An ended base price becomes a window reaching back indefinitely
            siblings = await self._price_points_for(
                price.plan_id, price.currency, BillingPeriod(price.billing_period)
            )
            for existing in siblings:
                if existing.price_point_id == price_point_id:
                    continue
                if existing.effective_from is None and existing.effective_until is None:
                    continue
                if _windows_overlap(None, until, existing.effective_from, existing.effective_until):
                    raise PriceWindowOverlapError(
                        f"Ending the base price overlaps price point {existing.price_point_id}",
                        conflicting_price_point_id=existing.price_point_id,
                    )

        price.effective_until = until
        await self.db.commit()

        logger.info("Price ended", price_point_id=price_point_id, until=until.isoformat())
        log_audit_event(
            action="price.ended",
            category="pricing",
            resource_type="price_point",
            resource_id=price_point_id,
        )
        return PricePoint.model_validate(price)

    async def get_price_point(self, price_point_id: str) -> PricePoint:
        price = await self.db.get(PricePointTable, price_point_id)
        if price is None:
            raise PricePointNotFoundError(
                f"Price point {price_point_id} not found", price_point_id=price_point_id
            )
        return PricePoint.model_validate(price)

    async def resolve_price(
        self,
        plan_id: str,
        currency: str,
        billing_period: BillingPeriod | str,
        at: datetime,
    ) -> PricePoint:
        """
        Resolve the price point applying at ``at``.

        A windowed price point whose window contains ``at`` wins; otherwise
        the unbounded base price applies. More than one candidate at either
        step is a catalog defect and raises ``AmbiguousPriceError`` rather
        than picking one.
        """
        code = currency.upper()
        period = BillingPeriod(billing_period)
        points = [
            PricePoint.model_validate(row)
            for row in await self._price_points_for(plan_id, code, period)
        ]

        windowed = [p for p in points if not p.is_unbounded and p.is_active_at(at)]
        candidates = windowed or [p for p in points if p.is_unbounded]

        if not candidates:
            raise PriceNotFoundError(
                f"No price for plan {plan_id} in {code} {period.value} at {at.isoformat()}",
                plan_id=plan_id,
                currency=code,
                billing_period=period.value,
            )
        if len(candidates) > 1:
            ids = sorted(p.price_point_id for p in candidates)
            logger.error(
                "Ambiguous price configuration",
                plan_id=plan_id,
                currency=code,
                billing_period=period.value,
                price_point_ids=ids,
            )
            raise AmbiguousPriceError(
                f"{len(candidates)} price points match plan {plan_id} in {code} {period.value}",
                plan_id=plan_id,
                currency=code,
                billing_period=period.value,
                price_point_ids=ids,
            )
        return candidates[0]

    # ========================================
    # Analytics
    # ========================================

    async def plan_analytics(self, plan_id: str, at: datetime) -> PlanAnalytics:
        """
        Subscriber counts and recurring revenue for a plan as of ``at``.

        Live subscriptions are those in trial, active or past due. Churn
        counts subscriptions that ended (cancelled or expired) in the 30 days
        before ``at``. MRR sums the locked price of paying subscriptions
        (active or past due) normalised to one month, per currency; lifetime
        subscriptions carry no recurring revenue.
        """
        await self._get_plan_row(plan_id)

        result = await self.db.execute(
            select(SubscriptionTable).where(SubscriptionTable.plan_id == plan_id)
        )
        subscriptions = result.scalars().all()

        churn_from = at - timedelta(days=CHURN_WINDOW_DAYS)
        analytics = PlanAnalytics(plan_id=plan_id, at=at, total_subscribers=len(subscriptions))
        mrr: dict[str, Decimal] = {}
        for subscription in subscriptions:
            if subscription.status in LIVE_STATUSES:
                analytics.active_subscribers += 1
            elif (
                subscription.status in ENDED_STATUSES
                and subscription.ended_at is not None
                and churn_from <= subscription.ended_at < at
            ):
                analytics.churned_last_30_days += 1

            if (
                subscription.status in PAYING_STATUSES
                and subscription.billing_period != BillingPeriod.LIFETIME.value
            ):
                monthly = subscription.unit_amount / period_months(subscription.billing_period)
                mrr[subscription.currency] = mrr.get(subscription.currency, ZERO) + monthly

        for currency, amount in sorted(mrr.items()):
            precision = self.currency_service.minor_unit_precision(currency)
            analytics.mrr[currency] = round_half_up(amount, precision)
            analytics.arr[currency] = round_half_up(amount * 12, precision)

        logger.debug(
            "Plan analytics computed",
            plan_id=plan_id,
            active_subscribers=analytics.active_subscribers,
            total_subscribers=analytics.total_subscribers,
        )
        return analytics

    # ========================================
    # Export / import
    # ========================================

    async def export_plans(self, status: PlanStatus | None = None) -> list[PlanExport]:
        """Plans with their features, limits and every price point, in display order."""
        query = select(PlanTable).order_by(PlanTable.sort_order, PlanTable.slug)
        if status is not None:
            query = query.where(PlanTable.status == status.value)
        plans = (await self.db.execute(query)).scalars().all()

        exported = []
        for plan in plans:
            features = await self.list_features(plan.plan_id)
            limits = await self.list_limits(plan.plan_id)
            prices = await self.db.execute(
                select(PricePointTable)
                .where(PricePointTable.plan_id == plan.plan_id)
                .order_by(
                    PricePointTable.currency,
                    PricePointTable.billing_period,
                    PricePointTable.effective_from,
                )
            )
            exported.append(
                PlanExport(
                    slug=plan.slug,
                    kind=plan.kind,
                    status=plan.status,
                    trial_days=plan.trial_days,
                    billing_periods=plan.billing_periods,
                    sort_order=plan.sort_order,
                    metadata=dict(plan.metadata_json),
                    features=[
                        PlanFeatureInput(
                            key=f.feature_key,
                            value=f.value,
                            feature_type=f.feature_type,
                            is_highlighted=f.is_highlighted,
                        )
                        for f in features
                    ],
                    limits={
                        limit.resource: PlanLimitInput(
                            quota=limit.quota,
                            reset_period=limit.reset_period,
                            enforcement=limit.enforcement,
                        )
                        for limit in limits
                    },
                    prices=[
                        PricePointInput(
                            currency=p.currency,
                            billing_period=p.billing_period,
                            amount=p.amount,
                            compare_at_amount=p.compare_at_amount,
                            setup_fee=p.setup_fee,
                            effective_from=p.effective_from,
                            effective_until=p.effective_until,
                        )
                        for p in prices.scalars().all()
                    ],
                )
            )

        logger.info("Plans exported", count=len(exported), status=status.value if status else None)
        return exported

    async def import_plans(
        self, plans: list[PlanExport], mode: ImportMode = ImportMode.MERGE
    ) -> PlanImportResult:
        """
        Import plans matched by slug.

        New slugs are created with their exported status. An existing slug is
        skipped in ``merge`` mode; in ``replace`` mode its definition,
        features and limits are overwritten and the imported price points
        added. Existing price points are never removed since subscriptions
        lock them, and the plan's status is left as it is.

        Each plan is committed on its own; a plan that fails validation is
        rolled back and reported in ``errors`` without stopping the import.
        """
        outcome = PlanImportResult()
        for data in plans:
            try:
                result = await self.db.execute(select(PlanTable).where(PlanTable.slug == data.slug))
                existing = result.scalar_one_or_none()
                if existing is not None and mode == ImportMode.MERGE:
                    outcome.skipped += 1
                    continue

                if existing is None:
                    plan = PlanTable(
                        slug=data.slug,
                        kind=data.kind.value,
                        trial_days=data.trial_days,
                        status=data.status.value,
                        billing_periods=[period.value for period in data.billing_periods],
                        sort_order=data.sort_order,
                        metadata_json=dict(data.metadata),
                    )
                    self.db.add(plan)
                    await self.db.flush()
                else:
                    plan = existing
                    plan.kind = data.kind.value
                    plan.trial_days = data.trial_days
                    plan.billing_periods = [period.value for period in data.billing_periods]
                    plan.sort_order = data.sort_order
                    plan.metadata_json = dict(data.metadata)
                    await self.db.execute(
                        delete(PlanFeatureTable).where(PlanFeatureTable.plan_id == plan.plan_id)
                    )
                    await self.db.execute(
                        delete(PlanLimitTable).where(PlanLimitTable.plan_id == plan.plan_id)
                    )

                self._add_imported_terms(plan.plan_id, data)
                for price in data.prices:
                    await self._add_imported_price(plan.plan_id, data, price)
                await self.db.commit()
            except PricingEngineError as exc:
                await self.db.rollback()
                logger.warning(
                    "Plan import failed",
                    slug=data.slug,
                    error_code=exc.error_code,
                    error=exc.message,
                )
                outcome.errors.append(
                    PlanImportError(slug=data.slug, error_code=exc.error_code, message=exc.message)
                )
                continue

            if existing is None:
                outcome.created += 1
            else:
                outcome.updated += 1

        logger.info(
            "Plans imported",
            mode=mode.value,
            created=outcome.created,
            updated=outcome.updated,
            skipped=outcome.skipped,
            failed=len(outcome.errors),
        )
        log_audit_event(
            action="plans.imported",
            category="pricing",
            resource_type="plan",
            mode=mode.value,
            created=outcome.created,
            updated=outcome.updated,
        )
        return outcome

    def _add_imported_terms(self, plan_id: str, data: PlanExport) -> None:
        for position, feature in enumerate(data.features):
            self.db.add(
                PlanFeatureTable(
                    plan_id=plan_id,
                    feature_key=feature.key,
                    value=feature.value,
                    feature_type=feature.feature_type.value,
                    is_highlighted=feature.is_highlighted,
                    sort_order=position,
                )
            )
        for resource, limit in data.limits.items():
            self.db.add(
                PlanLimitTable(
                    plan_id=plan_id,
                    resource=resource,
                    quota=limit.quota,
                    reset_period=limit.reset_period.value,
                    enforcement=limit.enforcement.value,
                )
            )

    async def _add_imported_price(
        self, plan_id: str, data: PlanExport, price: PricePointInput
    ) -> None:
        """Add an imported price point unless an identical one exists."""
        code = self.validate_currency(price.currency)
        if price.billing_period not in data.billing_periods:
            raise PlanNotSelectableError(
                f"Plan {data.slug} is not offered {price.billing_period.value}",
                plan_id=plan_id,
                reason="billing-period-not-offered",
            )
        if (
            price.effective_from is not None
            and price.effective_until is not None
            and price.effective_until <= price.effective_from
        ):
            raise InvalidPriceError(
                "effective_until must be after effective_from",
                validation_errors={
                    "effective_from": price.effective_from.isoformat(),
                    "effective_until": price.effective_until.isoformat(),
                },
            )

        unbounded = price.effective_from is None and price.effective_until is None
        for existing in await self._price_points_for(plan_id, code, price.billing_period):
            if (
                existing.amount == price.amount
                and existing.effective_from == price.effective_from
                and existing.effective_until == price.effective_until
            ):
                return
            existing_unbounded = existing.effective_from is None and existing.effective_until is None
            if unbounded != existing_unbounded:
                continue
            if unbounded or _windows_overlap(
                price.effective_from,
                price.effective_until,
                existing.effective_from,
                existing.effective_until,
            ):
                raise PriceWindowOverlapError(
                    f"Imported price overlaps price point {existing.price_point_id}",
                    conflicting_price_point_id=existing.price_point_id,
                )

        self.db.add(
            PricePointTable(
                plan_id=plan_id,
                currency=code,
                billing_period=price.billing_period.value,
                amount=price.amount,
                compare_at_amount=price.compare_at_amount,
                setup_fee=price.setup_fee,
                effective_from=price.effective_from,
                effective_until=price.effective_until,
            )
        )
        # Later prices in the same import are checked against this one
        await self.db.flush()
