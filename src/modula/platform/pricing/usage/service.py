"""
Usage metering service.

Usage records are append-only and summed per billing period, so recording
needs no locking. Periods come from the subscription itself: records carry
the subscription's ``period_sequence``, which moves forward whenever a new
billing period starts, so usage stays aligned with the real billing cycle
after proration or pause shifts.

Limits with ``hard`` enforcement reserve quantity through an atomic
conditional increment on a per-period counter before the record is written.
"""

from datetime import datetime

import structlog
from sqlalchemy import func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
from tenacity import AsyncRetrying, retry_if_exception_type, stop_after_attempt

from modula.platform.pricing.catalog.models import LimitEnforcement
from modula.platform.pricing.catalog.service import PriceCatalogService
from modula.platform.pricing.config import PricingConfig, get_pricing_config
from modula.platform.pricing.events import emit_quota_exceeded
from modula.platform.pricing.exceptions import (
    InvalidUsageError,
    QuotaExceededError,
    SubscriptionNotFoundError,
)
from modula.platform.pricing.models import (
    PlanLimitTable,
    SubscriptionTable,
    UsageCounterTable,
    UsageRecordTable,
)
from modula.platform.pricing.subscriptions.models import Subscription
from modula.platform.pricing.usage.models import (
    QuotaCheckResult,
    ResourceUsage,
    UsageRecord,
    UsageSummary,
)

logger = structlog.get_logger(__name__)


class UsageMeterService:
    """Service for recording metered usage and checking plan quotas."""

    def __init__(
        self,
        db_session: AsyncSession,
        catalog: PriceCatalogService | None = None,
        config: PricingConfig | None = None,
    ) -> None:
        self.db = db_session
        self.config = config or get_pricing_config()
        self.catalog = catalog or PriceCatalogService(db_session, config=self.config)

    async def _get_subscription(self, subscription_id: str) -> Subscription:
        result = await self.db.execute(
            select(SubscriptionTable)
            .where(SubscriptionTable.subscription_id == subscription_id)
            .execution_options(populate_existing=True)
        )
        row = result.scalar_one_or_none()
        if row is None:
            raise SubscriptionNotFoundError(
                f"Subscription {subscription_id} not found", subscription_id=subscription_id
            )
        return Subscription.model_validate(row)

    async def _period_total(self, subscription: Subscription, resource: str) -> int:
        result = await self.db.execute(
            select(func.coalesce(func.sum(UsageRecordTable.quantity), 0)).where(
                UsageRecordTable.subscription_id == subscription.subscription_id,
                UsageRecordTable.resource == resource,
                UsageRecordTable.period_sequence == subscription.period_sequence,
            )
        )
        return int(result.scalar_one())

    # ========================================
    # Recording
    # ========================================

    async def record(
        self, subscription_id: str, resource: str, quantity: int, at: datetime
    ) -> UsageRecord:
        """
        Append usage for the subscription's current billing period.

        Raises:
            InvalidUsageError: negative quantity, terminal subscription, or
                ``at`` outside the current period
            QuotaExceededError: the resource has a hard limit and the
                quantity does not fit
        """
        if quantity < 0:
            raise InvalidUsageError(
                "Usage quantity must be non-negative",
                context={"subscription_id": subscription_id, "quantity": quantity},
            )

        subscription = await self._get_subscription(subscription_id)
        if subscription.is_terminal:
            raise InvalidUsageError(
                f"Subscription is {subscription.status.value}",
                context={"subscription_id": subscription_id, "status": subscription.status.value},
            )
        if not subscription.current_period_start <= at < subscription.current_period_end:
            raise InvalidUsageError(
                "Usage time falls outside the current billing period",
                context={
                    "subscription_id": subscription_id,
                    "at": at.isoformat(),
                    "period_start": subscription.current_period_start.isoformat(),
                    "period_end": subscription.current_period_end.isoformat(),
                },
            )

        limit = await self.catalog.get_limit(subscription.plan_id, resource)
        try:
            if limit.enforcement == LimitEnforcement.HARD and limit.quota is not None:
                await self._reserve(subscription, resource, limit.quota, quantity)

            record = UsageRecordTable(
                subscription_id=subscription_id,
                resource=resource,
                quantity=quantity,
                period_start=subscription.current_period_start,
                period_end=subscription.current_period_end,
                period_sequence=subscription.period_sequence,
                recorded_at=at,
            )
            self.db.add(record)
            await self.db.commit()
        except Exception:
            await self.db.rollback()
            raise

        logger.debug(
            "Usage recorded",
            subscription_id=subscription_id,
            resource=resource,
            quantity=quantity,
            period_sequence=subscription.period_sequence,
        )
        return UsageRecord.model_validate(record)

    async def _reserve(
        self, subscription: Subscription, resource: str, quota: int, quantity: int
    ) -> None:
        """Claim ``quantity`` on the period counter or raise ``QuotaExceededError``."""
        try:
            async for attempt in AsyncRetrying(
                stop=stop_after_attempt(self.config.usage.counter_attempts),
                retry=retry_if_exception_type(IntegrityError),
                reraise=True,
            ):
                with attempt:
                    await self._reserve_once(subscription, resource, quota, quantity)
        except QuotaExceededError as exc:
            logger.info(
                "Hard quota exceeded",
                subscription_id=subscription.subscription_id,
                resource=resource,
                requested=quantity,
                remaining=exc.remaining,
            )
            await emit_quota_exceeded(
                subscription_id=subscription.subscription_id,
                resource=resource,
                requested=quantity,
                remaining=exc.remaining,
            )
            raise

    async def _reserve_once(
        self, subscription: Subscription, resource: str, quota: int, quantity: int
    ) -> None:
        counter_key = (
            UsageCounterTable.subscription_id == subscription.subscription_id,
            UsageCounterTable.resource == resource,
            UsageCounterTable.period_sequence == subscription.period_sequence,
        )
        claimed = await self.db.execute(
            update(UsageCounterTable)
            .where(*counter_key, UsageCounterTable.used + quantity <= quota)
            .values(used=UsageCounterTable.used + quantity)
            .execution_options(synchronize_session=False)
        )
        if claimed.rowcount == 1:
            return

        result = await self.db.execute(select(UsageCounterTable.used).where(*counter_key))
        used = result.scalar_one_or_none()
        if used is None:
            # First hard reservation this period; include usage already recorded
            used = await self._period_total(subscription, resource)
            if used + quantity <= quota:
                self.db.add(
                    UsageCounterTable(
                        subscription_id=subscription.subscription_id,
                        resource=resource,
                        period_sequence=subscription.period_sequence,
                        used=used + quantity,
                    )
                )
                try:
                    await self.db.flush()
                except IntegrityError:
                    # Another writer created the counter first
                    await self.db.rollback()
                    raise
                return

        remaining = max(0, quota - used)
        raise QuotaExceededError(
            f"Usage of {resource} would exceed the plan limit",
            resource=resource,
            remaining=remaining,
            limit=quota,
            current_usage=used,
        )

    # ========================================
    # Queries
    # ========================================

    async def current_usage(self, subscription_id: str, resource: str) -> int:
        """Sum of usage for the subscription's current billing period."""
        subscription = await self._get_subscription(subscription_id)
        return await self._period_total(subscription, resource)

    async def check_quota(
        self, subscription_id: str, resource: str, additional: int = 0
    ) -> QuotaCheckResult:
        """
        Compare current usage plus ``additional`` against the plan limit.

        Advisory: the gap between this check and a later ``record`` is not
        protected. Use a ``hard`` limit where overage must be impossible.
        """
        subscription = await self._get_subscription(subscription_id)
        limit = await self.catalog.get_limit(subscription.plan_id, resource)
        used = await self._period_total(subscription, resource)

        if limit.is_unlimited or limit.quota is None:
            return QuotaCheckResult(
                allowed=True, resource=resource, current_usage=used, requested=additional
            )

        return QuotaCheckResult(
            allowed=used + additional <= limit.quota,
            resource=resource,
            current_usage=used,
            requested=additional,
            limit=limit.quota,
            remaining=max(0, limit.quota - used),
        )

    async def require_quota(
        self, subscription_id: str, resource: str, additional: int = 0
    ) -> QuotaCheckResult:
        """Like ``check_quota`` but raises ``QuotaExceededError`` when not allowed."""
        result = await self.check_quota(subscription_id, resource, additional)
        if not result.allowed:
            raise QuotaExceededError(
                f"Usage of {resource} would exceed the plan limit",
                resource=resource,
                remaining=result.remaining or 0,
                limit=result.limit or 0,
                current_usage=result.current_usage,
            )
        return result

    async def usage_summary(self, subscription_id: str) -> UsageSummary:
        """Totals for every limited or recorded resource in the current period."""
        subscription = await self._get_subscription(subscription_id)

        totals_result = await self.db.execute(
            select(UsageRecordTable.resource, func.sum(UsageRecordTable.quantity))
            .where(
                UsageRecordTable.subscription_id == subscription_id,
                UsageRecordTable.period_sequence == subscription.period_sequence,
            )
            .group_by(UsageRecordTable.resource)
        )
        totals = {resource: int(total) for resource, total in totals_result.all()}

        limits_result = await self.db.execute(
            select(PlanLimitTable).where(PlanLimitTable.plan_id == subscription.plan_id)
        )
        limits = {row.resource: row.quota for row in limits_result.scalars().all()}

        resources = []
        for resource in sorted(set(totals) | set(limits)):
            used = totals.get(resource, 0)
            quota = limits.get(resource)
            resources.append(
                ResourceUsage(
                    resource=resource,
                    used=used,
                    limit=quota,
                    remaining=max(0, quota - used) if quota is not None else None,
                )
            )

        return UsageSummary(
            subscription_id=subscription_id,
            period_start=subscription.current_period_start,
            period_end=subscription.current_period_end,
            period_sequence=subscription.period_sequence,
            resources=resources,
        )
