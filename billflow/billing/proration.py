"""Refund proration for canceled billing periods.

Pure arithmetic, no I/O. Period bounds may be datetimes or plain numbers (any unit),
as long as all three share the same type.
"""

import math
from datetime import datetime, timedelta
from fractions import Fraction
from typing import Union

Instant = Union[datetime, int, float]

_DAY = timedelta(days=1)


def _span(start: Instant, end: Instant) -> Fraction:
    """Exact length of [start, end]; datetimes are measured in microseconds."""
    delta = end - start
    if isinstance(delta, timedelta):
        return Fraction(delta // timedelta(microseconds=1))
    return Fraction(delta)


def unused_fraction(period_start: Instant, period_end: Instant, now: Instant) -> Fraction:
    """Share of the period still ahead of ``now``, in [0, 1].

    A degenerate period (end at or before start) has no unused share.
    """
    total = _span(period_start, period_end)
    if total <= 0:
        return Fraction(0)
    remaining = max(Fraction(0), _span(now, period_end))
    return min(Fraction(1), remaining / total)


def calculate_refund(
    period_start: Instant, period_end: Instant, now: Instant, amount_paid: int
) -> int:
    """Refund owed for the unused part of a paid period.

    ``floor(amount_paid * unused_fraction)``, clamped to ``[0, amount_paid]``.

    Args:
        period_start: Start of the paid period.
        period_end: End of the paid period.
        now: Moment of cancellation.
        amount_paid: Amount paid for the period, in minor currency units.

    Returns:
        int: The refund in minor currency units.
    """
    if amount_paid <= 0:
        return 0
    refund = math.floor(amount_paid * unused_fraction(period_start, period_end, now))
    return max(0, min(amount_paid, refund))


def days_until(end: datetime, now: datetime) -> int:
    """Whole days left until ``end``, rounded up; 0 once ``end`` has passed."""
    remaining = end - now
    if remaining <= timedelta(0):
        return 0
    return math.ceil(remaining / _DAY)
