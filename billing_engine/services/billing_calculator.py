"""Billing date and proration arithmetic.

Pure functions: no I/O, no clock reads. Every input that would make the
arithmetic meaningless (zero cycle, missing price) raises immediately.
"""

from datetime import datetime, timedelta
from decimal import ROUND_HALF_UP, Decimal
from typing import Any

from billing_engine.utils.billing_cycle import BillingCycle, BillingIntegrityError

SECONDS_PER_DAY = Decimal(86400)
CENTS = Decimal("0.01")


class InvalidPlanPriceError(BillingIntegrityError, ValueError):
    """Raised when a plan price is missing or negative."""

    pass


def validate_plan_price(plan_price: Any) -> Decimal:
    """Return plan_price as a Decimal, raising if it cannot be billed.

    Raises:
        InvalidPlanPriceError: If the price is None, not numeric, NaN or negative
    """
    if plan_price is None or isinstance(plan_price, bool):
        raise InvalidPlanPriceError(f"Plan price is missing or invalid: {plan_price!r}")
    try:
        price = Decimal(str(plan_price))
    except ArithmeticError as e:
        raise InvalidPlanPriceError(f"Plan price is not a number: {plan_price!r}") from e
    if not price.is_finite() or price < 0:
        raise InvalidPlanPriceError(f"Plan price must be a non-negative amount, got {plan_price!r}")
    return price


def next_billing_date(anchor: datetime, cycle_days: int) -> datetime:
    """Compute the billing date one cycle after anchor.

    Args:
        anchor: Date the cycle starts from
        cycle_days: Cycle length (1, 7, 30, 90, 365 are calendar-aware)

    Returns:
        Next billing date

    Raises:
        InvalidBillingCycleError: If cycle_days is not a positive integer
    """
    return BillingCycle(cycle_days).advance(anchor)


def days_between(start: datetime, end: datetime) -> Decimal:
    """Fractional days from start to end (negative when end is earlier)."""
    return Decimal(str((end - start).total_seconds())) / SECONDS_PER_DAY


def remaining_days(next_billing: datetime, now: datetime) -> Decimal:
    """Days left in the current cycle, clamped to zero when overdue."""
    return max(Decimal(0), days_between(now, next_billing))


def prorated_amount(
    plan_price: Any,
    cycle_days: int,
    next_billing: datetime,
    now: datetime,
) -> Decimal:
    """Amount covering the unused remainder of the current cycle.

    remaining = max(0, days_between(now, next_billing))
    amount = max(0, plan_price * remaining / cycle_days), rounded to cents

    The result is never negative, is zero once now >= next_billing, and
    equals plan_price when a full cycle or more remains (the ratio is capped
    at 1, so a 31-day month never prorates above the plan price). It never
    increases as now moves forward.

    Raises:
        InvalidBillingCycleError: If cycle_days is not a positive integer
        InvalidPlanPriceError: If plan_price is missing or negative
    """
    cycle = BillingCycle(cycle_days)
    price = validate_plan_price(plan_price)

    remaining = remaining_days(next_billing, now)
    if remaining == 0:
        return Decimal("0.00")

    ratio = min(Decimal(1), remaining / Decimal(cycle.days))
    amount = (price * ratio).quantize(CENTS, rounding=ROUND_HALF_UP)
    return max(Decimal("0.00"), amount)


def is_due(next_billing: datetime, now: datetime) -> bool:
    """A subscription is due once its next billing date is at or before now."""
    return next_billing <= now


def renewal_window_end(now: datetime, window_days: int) -> datetime:
    """Latest end_date still considered for renewal at time now."""
    return now + timedelta(days=window_days)


def catch_up_billing_date(
    previous: datetime,
    cycle_days: int,
    now: datetime,
) -> datetime:
    """Advance previous by one cycle, restarting from now if still in the past.

    Used on renewal, where the anchor is the previous next_billing_date: a
    subscription that lapsed months ago must not come out of renewal already
    due again.
    """
    candidate = next_billing_date(previous, cycle_days)
    if candidate <= now:
        return next_billing_date(now, cycle_days)
    return candidate
