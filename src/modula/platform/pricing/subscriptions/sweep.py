"""
Period sweep.

Externally triggered pass that advances every subscription with a boundary
due at ``now``. Subscriptions are independent aggregates, so each one is
advanced in its own session and the pass runs them concurrently up to a
bound. A failing subscription is logged and counted; it never stops the
sweep.
"""

import asyncio
from datetime import datetime

import structlog
from sqlalchemy import and_, or_, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from modula.platform.pricing.config import PricingConfig, get_pricing_config
from modula.platform.pricing.gateway import PaymentGateway
from modula.platform.pricing.models import SubscriptionTable
from modula.platform.pricing.subscriptions.models import SubscriptionStatus, SweepReport
from modula.platform.pricing.subscriptions.service import SubscriptionService

logger = structlog.get_logger(__name__)


async def find_due_subscription_ids(session: AsyncSession, now: datetime) -> list[str]:
    """Ids of non-terminal subscriptions with a boundary at or before ``now``."""
    live = SubscriptionTable.status.not_in(
        [SubscriptionStatus.CANCELLED.value, SubscriptionStatus.EXPIRED.value]
    )
    due = or_(
        SubscriptionTable.current_period_end <= now,
        and_(
            SubscriptionTable.status == SubscriptionStatus.TRIAL.value,
            SubscriptionTable.trial_ends_at <= now,
        ),
        and_(
            SubscriptionTable.status == SubscriptionStatus.PAUSED.value,
            SubscriptionTable.resume_at <= now,
        ),
    )
    result = await session.execute(
        select(SubscriptionTable.subscription_id)
        .where(live, due)
        .order_by(SubscriptionTable.current_period_end)
    )
    return list(result.scalars().all())


async def advance_due_subscriptions(
    session_factory: async_sessionmaker[AsyncSession],
    now: datetime,
    gateway: PaymentGateway | None = None,
    concurrency: int | None = None,
    config: PricingConfig | None = None,
) -> SweepReport:
    """
    Advance every due subscription to ``now``.

    Args:
        session_factory: Creates one session per subscription
        now: Instant the sweep runs at
        gateway: Payment gateway for renewal charges
        concurrency: Parallel advances (defaults to ``sweep.concurrency``)
        config: Pricing configuration (defaults to the global one)

    Returns:
        Counts of examined, advanced, unchanged and failed subscriptions
    """
    config = config or get_pricing_config()
    limit = concurrency or config.sweep.concurrency

    async with session_factory() as session:
        due_ids = await find_due_subscription_ids(session, now)

    report = SweepReport(examined=len(due_ids))
    semaphore = asyncio.Semaphore(limit)

    logger.info("Sweep started", due=len(due_ids), at=now.isoformat(), concurrency=limit)

    async def advance_one(subscription_id: str) -> None:
        async with semaphore:
            try:
                async with session_factory() as session:
                    service = SubscriptionService(session, gateway=gateway, config=config)
                    before = await service.get_subscription(subscription_id)
                    after = await service.advance(subscription_id, now)
            except Exception:
                report.failed += 1
                report.failed_ids.append(subscription_id)
                logger.exception("Sweep failed to advance subscription", subscription_id=subscription_id)
                return

            if after.version != before.version:
                report.advanced += 1
            else:
                report.unchanged += 1

    await asyncio.gather(*(advance_one(subscription_id) for subscription_id in due_ids))

    logger.info(
        "Sweep finished",
        examined=report.examined,
        advanced=report.advanced,
        unchanged=report.unchanged,
        failed=report.failed,
    )
    return report
