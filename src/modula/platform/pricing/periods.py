"""
Billing period arithmetic.

Periods are calendar-based. A monthly period starting Jan 31 ends on the
last day of February. Renewals are counted from the subscription's billing
anchor, so the next period runs to Mar 31 rather than Mar 28.
"""

import calendar
from datetime import datetime
from enum import Enum


class BillingPeriod(str, Enum):
    """Caller-selected renewal cadence."""

    MONTHLY = "monthly"
    QUARTERLY = "quarterly"
    YEARLY = "yearly"
    LIFETIME = "lifetime"


_PERIOD_MONTHS = {
    BillingPeriod.MONTHLY: 1,
    BillingPeriod.QUARTERLY: 3,
    BillingPeriod.YEARLY: 12,
    BillingPeriod.LIFETIME: 1200,
}


def period_months(billing_period: BillingPeriod | str) -> int:
    return _PERIOD_MONTHS[BillingPeriod(billing_period)]


def add_months(moment: datetime, months: int) -> datetime:
    """Add calendar months, clamping the day to the target month's length."""
    month_index = moment.month - 1 + months
    year = moment.year + month_index // 12
    month = month_index % 12 + 1
    day = min(moment.day, calendar.monthrange(year, month)[1])
    return moment.replace(year=year, month=month, day=day)


def period_end(
    start: datetime,
    billing_period: BillingPeriod | str,
    anchor: datetime | None = None,
) -> datetime:
    """
    End of the billing period that starts at ``start``.

    With an ``anchor``, the end is the first ``anchor + n * period`` after
    ``start``, each step clamped from the anchor itself. Without one the
    period is counted from ``start``.
    """
    months = period_months(billing_period)
    if anchor is None or anchor > start:
        return add_months(start, months)

    elapsed = (start.year - anchor.year) * 12 + start.month - anchor.month
    steps = max(1, elapsed // months)
    end = add_months(anchor, steps * months)
    while end <= start:
        steps += 1
        end = add_months(anchor, steps * months)
    return end
