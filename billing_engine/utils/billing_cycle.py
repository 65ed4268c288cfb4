"""Billing cycle value type and date arithmetic.

Cycles of 1, 7, 30, 90 and 365 days are calendar-aware: they advance by a
day, a week, one calendar month, three calendar months and one calendar
year. A monthly cycle anchored on January 31 therefore lands on the last
day of February instead of drifting into March. Any other length advances
by that literal number of days.

Cycles can also be written as ISO 8601 durations (P1D, P1W, P1M, P3M, P1Y,
P14D, ...), the format plan catalogs usually carry.
"""

import re
from datetime import datetime, timedelta
from typing import Optional

from dateutil.relativedelta import relativedelta

DAYS_PER_WEEK = 7
DAYS_PER_MONTH = 30  # Cycle length that means "one calendar month"
DAYS_PER_QUARTER = 90
DAYS_PER_YEAR = 365

CALENDAR_STEPS: dict[int, relativedelta] = {
    1: relativedelta(days=1),
    DAYS_PER_WEEK: relativedelta(weeks=1),
    DAYS_PER_MONTH: relativedelta(months=1),
    DAYS_PER_QUARTER: relativedelta(months=3),
    DAYS_PER_YEAR: relativedelta(years=1),
}

CYCLE_NAMES: dict[int, str] = {
    1: "daily",
    DAYS_PER_WEEK: "weekly",
    DAYS_PER_MONTH: "monthly",
    DAYS_PER_QUARTER: "quarterly",
    DAYS_PER_YEAR: "annual",
}


class BillingIntegrityError(Exception):
    """Raised when billing data is structurally invalid (a data bug, not a runtime condition)."""

    pass


class InvalidBillingCycleError(BillingIntegrityError, ValueError):
    """Raised when a billing cycle length is missing, zero, negative or not an integer."""

    pass


def validate_cycle_days(cycle_days: object) -> int:
    """Return cycle_days if it is a usable cycle length, raise otherwise.

    Raises:
        InvalidBillingCycleError: If cycle_days is not a positive integer
    """
    if isinstance(cycle_days, bool) or not isinstance(cycle_days, int):
        raise InvalidBillingCycleError(
            f"Billing cycle must be a positive integer number of days, got {cycle_days!r}"
        )
    if cycle_days <= 0:
        raise InvalidBillingCycleError(f"Billing cycle must be positive, got {cycle_days}")
    return cycle_days


def parse_billing_period(period: str) -> int:
    """Parse an ISO 8601 duration string to a cycle length in days.

    Supported formats:
    - P[n]D - days (P14D = 14)
    - P[n]W - weeks (P1W = 7)
    - P[n]M - months (P1M = 30, P3M = 90)
    - P[n]Y - years (P1Y = 365)

    Months and years map onto the calendar-aware cycle lengths, so
    P1M round-trips to a real calendar month when the cycle is advanced.

    Raises:
        InvalidBillingCycleError: If the period string is invalid or unsupported

    Examples:
        >>> parse_billing_period("P1M")
        30
        >>> parse_billing_period("P2W")
        14
    """
    if not period or not isinstance(period, str):
        raise InvalidBillingCycleError("Period must be a non-empty string")

    period = period.strip().upper()
    match = re.match(r"^P(\d+)?([DWMY])$", period)
    if not match:
        raise InvalidBillingCycleError(
            f"Unsupported period format: '{period}'. Supported formats: P[n]D, P[n]W, P[n]M, P[n]Y"
        )

    number_str, unit = match.groups()
    number = int(number_str) if number_str else 1
    if number <= 0:
        raise InvalidBillingCycleError(f"Period number must be positive, got: {number}")

    if unit == "D":
        return number
    if unit == "W":
        return number * DAYS_PER_WEEK
    if unit == "M":
        return number * DAYS_PER_MONTH
    return number * DAYS_PER_YEAR


def format_billing_period(cycle_days: int) -> str:
    """Convert a cycle length back to the most natural ISO 8601 duration.

    Examples:
        >>> format_billing_period(30)
        'P1M'
        >>> format_billing_period(14)
        'P2W'
    """
    validate_cycle_days(cycle_days)

    if cycle_days == DAYS_PER_YEAR:
        return "P1Y"
    if cycle_days % DAYS_PER_MONTH == 0 and cycle_days < DAYS_PER_YEAR:
        return f"P{cycle_days // DAYS_PER_MONTH}M"
    if cycle_days % DAYS_PER_WEEK == 0:
        return f"P{cycle_days // DAYS_PER_WEEK}W"
    return f"P{cycle_days}D"


class BillingCycle:
    """Recurring billing cadence, expressed in days.

    Immutable and hashable; two cycles are equal when their lengths are.
    """

    __slots__ = ("_days",)

    def __init__(self, days: int):
        self._days = validate_cycle_days(days)

    @classmethod
    def from_iso_period(cls, period: str) -> "BillingCycle":
        """Build a cycle from an ISO 8601 duration (e.g., "P1M")."""
        return cls(parse_billing_period(period))

    @property
    def days(self) -> int:
        return self._days

    @property
    def name(self) -> str:
        """daily, weekly, monthly, quarterly, annual or custom."""
        return CYCLE_NAMES.get(self._days, "custom")

    @property
    def is_calendar_aware(self) -> bool:
        return self._days in CALENDAR_STEPS

    @property
    def iso_period(self) -> str:
        return format_billing_period(self._days)

    def step(self) -> Optional[relativedelta]:
        """Calendar step for this cycle, None for literal day counts."""
        return CALENDAR_STEPS.get(self._days)

    def advance(self, anchor: datetime) -> datetime:
        """Return the date one cycle after anchor.

        Calendar months clamp to the last valid day (Jan 31 -> Feb 28/29).
        Time of day and tzinfo are preserved.
        """
        step = self.step()
        if step is not None:
            return anchor + step
        return anchor + timedelta(days=self._days)

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, BillingCycle):
            return NotImplemented
        return self._days == other._days

    def __hash__(self) -> int:
        return hash(self._days)

    def __repr__(self) -> str:
        return f"BillingCycle(days={self._days}, name={self.name!r})"
