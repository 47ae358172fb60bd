"""
Tests for the Period Clock
"""

from datetime import date, datetime, timedelta, timezone

from meterline.core.period import (
    current_period_start,
    next_period_start,
    period_bounds,
    period_start_datetime,
    previous_period,
)


class TestCurrentPeriod:
    """Billing periods are calendar months in UTC."""

    def test_mid_month(self):
        now = datetime(2026, 3, 15, 12, 30, tzinfo=timezone.utc)
        assert current_period_start(now) == date(2026, 3, 1)

    def test_first_instant_of_month(self):
        now = datetime(2026, 4, 1, 0, 0, tzinfo=timezone.utc)
        assert current_period_start(now) == date(2026, 4, 1)

    def test_naive_datetime_is_utc(self):
        assert current_period_start(datetime(2026, 1, 31, 23, 59)) == date(2026, 1, 1)

    def test_other_timezone_converted_to_utc(self):
        """00:30 on April 1st in UTC+2 is still March in UTC."""
        oslo_summer = timezone(timedelta(hours=2))
        now = datetime(2026, 4, 1, 0, 30, tzinfo=oslo_summer)
        assert current_period_start(now) == date(2026, 3, 1)


class TestPeriodBounds:

    def test_bounds_are_half_open_month(self):
        assert period_bounds(date(2026, 2, 1)) == (date(2026, 2, 1), date(2026, 3, 1))

    def test_bounds_normalize_to_first_of_month(self):
        assert period_bounds(date(2026, 2, 17)) == (date(2026, 2, 1), date(2026, 3, 1))

    def test_december_rolls_into_next_year(self):
        assert next_period_start(date(2026, 12, 1)) == date(2027, 1, 1)

    def test_previous_period_across_year(self):
        now = datetime(2027, 1, 10, tzinfo=timezone.utc)
        assert previous_period(now) == (date(2026, 12, 1), date(2027, 1, 1))

    def test_period_start_datetime_is_utc_midnight(self):
        start = period_start_datetime(date(2026, 3, 1))
        assert start.tzinfo == timezone.utc
        assert (start.hour, start.minute) == (0, 0)
