"""
Proration for immediate plan changes.

Time is measured in whole microseconds, so the unused fraction is exact to
sub-second precision and independent of floating point.
"""

from datetime import datetime, timedelta
from decimal import Decimal

from modula.platform.pricing.money_utils import ZERO, round_half_up
from modula.platform.pricing.subscriptions.models import ProrationResult

_MICROSECOND = timedelta(microseconds=1)


def unused_fraction(period_start: datetime, period_end: datetime, now: datetime) -> Decimal:
    """Share of the period still ahead of ``now``, clamped to ``[0, 1]``."""
    total = (period_end - period_start) // _MICROSECOND
    if total <= 0:
        return ZERO
    remaining = (period_end - now) // _MICROSECOND
    fraction = Decimal(remaining) / Decimal(total)
    return min(Decimal(1), max(ZERO, fraction))


def calculate_proration(
    period_start: datetime,
    period_end: datetime,
    now: datetime,
    old_price: Decimal,
    new_price: Decimal,
    precision: int,
) -> ProrationResult:
    """
    Credit the unused part of the current period toward the new price.

    The credit never exceeds ``old_price`` and the new charge is never
    negative; whatever credit the new price cannot absorb is returned as
    ``remainder``.
    """
    fraction = unused_fraction(period_start, period_end, now)
    credit = min(old_price, round_half_up(fraction * old_price, precision))
    new_charge = max(ZERO, new_price - credit)
    remainder = max(ZERO, credit - new_price)

    return ProrationResult(
        unused_fraction=fraction,
        credit=credit,
        new_price=new_price,
        new_charge=round_half_up(new_charge, precision),
        remainder=round_half_up(remainder, precision),
    )
