"""Tests for billing cycle arithmetic and ISO period conversion."""

from datetime import datetime, timezone

import pytest

from billing_engine.utils.billing_cycle import (
    BillingCycle,
    BillingIntegrityError,
    InvalidBillingCycleError,
    format_billing_period,
    parse_billing_period,
    validate_cycle_days,
)


def utc(*args) -> datetime:
    return datetime(*args, tzinfo=timezone.utc)


class TestCalendarAwareCycles:
    """Test that the standard cycle lengths follow the calendar."""

    def test_monthly_from_january_31_lands_on_february_28(self):
        assert BillingCycle(30).advance(utc(2026, 1, 31)) == utc(2026, 2, 28)

    def test_monthly_from_january_31_in_leap_year(self):
        assert BillingCycle(30).advance(utc(2028, 1, 31)) == utc(2028, 2, 29)

    def test_monthly_is_not_thirty_literal_days(self):
        """March 1 + one month is April 1, not March 31."""
        assert BillingCycle(30).advance(utc(2026, 3, 1)) == utc(2026, 4, 1)

    def test_daily(self):
        assert BillingCycle(1).advance(utc(2026, 12, 31)) == utc(2027, 1, 1)

    def test_weekly(self):
        assert BillingCycle(7).advance(utc(2026, 2, 25)) == utc(2026, 3, 4)

    def test_quarterly_clamps_to_month_end(self):
        assert BillingCycle(90).advance(utc(2026, 11, 30)) == utc(2027, 2, 28)

    def test_annual_from_leap_day(self):
        assert BillingCycle(365).advance(utc(2028, 2, 29)) == utc(2029, 2, 28)

    def test_time_of_day_and_timezone_preserved(self):
        anchor = utc(2026, 1, 15, 13, 45, 10)
        result = BillingCycle(30).advance(anchor)
        assert result == utc(2026, 2, 15, 13, 45, 10)
        assert result.tzinfo == timezone.utc


class TestLiteralCycles:
    """Test that non-standard lengths advance by literal days."""

    @pytest.mark.parametrize("days", [2, 14, 28, 31, 45, 180])
    def test_custom_lengths_add_literal_days(self, days):
        anchor = utc(2026, 1, 31)
        result = BillingCycle(days).advance(anchor)
        assert (result - anchor).days == days

    def test_custom_cycle_is_not_calendar_aware(self):
        assert not BillingCycle(14).is_calendar_aware
        assert BillingCycle(14).step() is None
        assert BillingCycle(30).is_calendar_aware


class TestCycleValidation:
    """Test that invalid cycle lengths fail fast."""

    @pytest.mark.parametrize("value", [0, -1, -30])
    def test_non_positive_cycle_rejected(self, value):
        with pytest.raises(InvalidBillingCycleError):
            BillingCycle(value)

    @pytest.mark.parametrize("value", [None, 30.0, "30", True])
    def test_non_integer_cycle_rejected(self, value):
        with pytest.raises(InvalidBillingCycleError):
            validate_cycle_days(value)

    def test_error_is_integrity_and_value_error(self):
        with pytest.raises(BillingIntegrityError):
            BillingCycle(0)
        with pytest.raises(ValueError):
            BillingCycle(0)


class TestCycleValueType:
    """Test BillingCycle identity and naming."""

    @pytest.mark.parametrize(
        "days,name",
        [(1, "daily"), (7, "weekly"), (30, "monthly"), (90, "quarterly"), (365, "annual"), (14, "custom")],
    )
    def test_names(self, days, name):
        assert BillingCycle(days).name == name

    def test_equality_and_hash(self):
        assert BillingCycle(30) == BillingCycle(30)
        assert BillingCycle(30) != BillingCycle(31)
        assert len({BillingCycle(7), BillingCycle(7), BillingCycle(1)}) == 2

    def test_repr(self):
        assert repr(BillingCycle(30)) == "BillingCycle(days=30, name='monthly')"


class TestIsoPeriods:
    """Test ISO 8601 duration parsing and formatting."""

    @pytest.mark.parametrize(
        "period,days",
        [("P1D", 1), ("P14D", 14), ("P1W", 7), ("P2W", 14), ("P1M", 30), ("P3M", 90), ("P1Y", 365), ("p1m", 30)],
    )
    def test_parse(self, period, days):
        assert parse_billing_period(period) == days

    @pytest.mark.parametrize("period", ["", "1M", "P", "PXM", "P0D", "P1H", "P1M2D"])
    def test_parse_rejects_invalid(self, period):
        with pytest.raises(InvalidBillingCycleError):
            parse_billing_period(period)

    @pytest.mark.parametrize(
        "days,period",
        [(1, "P1D"), (7, "P1W"), (14, "P2W"), (30, "P1M"), (90, "P3M"), (365, "P1Y"), (10, "P10D")],
    )
    def test_format(self, days, period):
        assert format_billing_period(days) == period

    def test_from_iso_period(self):
        cycle = BillingCycle.from_iso_period("P3M")
        assert cycle.days == 90
        assert cycle.iso_period == "P3M"
