"""
Tests for working-time arithmetic.

Tests cover:
- add_duration across nights, weekends and holidays
- elapsed counts only working windows
- Timezone-aware windows
- Property: elapsed(start, add_duration(start, d)) == d
"""

from datetime import date, datetime, time, timedelta, timezone

import pytest
from hypothesis import given, settings
from hypothesis import strategies as st

from workflow_kernel.domain.calendar import BusinessHoursCalendar, WallClockCalendar

UTC = timezone.utc
MONDAY_9 = datetime(2024, 1, 1, 9, 0, tzinfo=UTC)


class TestAddDuration:
    def test_within_one_day(self):
        cal = BusinessHoursCalendar()
        assert cal.add_duration(MONDAY_9, timedelta(hours=3)) == datetime(2024, 1, 1, 12, 0, tzinfo=UTC)

    def test_exact_end_of_day(self):
        cal = BusinessHoursCalendar()
        assert cal.add_duration(MONDAY_9, timedelta(hours=8)) == datetime(2024, 1, 1, 17, 0, tzinfo=UTC)

    def test_rolls_to_next_morning(self):
        cal = BusinessHoursCalendar()
        assert cal.add_duration(MONDAY_9, timedelta(hours=9)) == datetime(2024, 1, 2, 10, 0, tzinfo=UTC)

    def test_start_before_opening(self):
        cal = BusinessHoursCalendar()
        early = datetime(2024, 1, 1, 6, 0, tzinfo=UTC)
        assert cal.add_duration(early, timedelta(hours=1)) == datetime(2024, 1, 1, 10, 0, tzinfo=UTC)

    def test_skips_weekend(self):
        cal = BusinessHoursCalendar()
        friday = datetime(2024, 1, 5, 15, 0, tzinfo=UTC)
        assert cal.add_duration(friday, timedelta(hours=4)) == datetime(2024, 1, 8, 11, 0, tzinfo=UTC)

    def test_skips_holiday(self):
        cal = BusinessHoursCalendar(holidays=frozenset({date(2024, 1, 2)}))
        assert cal.add_duration(MONDAY_9, timedelta(hours=9)) == datetime(2024, 1, 3, 10, 0, tzinfo=UTC)

    def test_zero_duration(self):
        assert BusinessHoursCalendar().add_duration(MONDAY_9, timedelta(0)) == MONDAY_9

    def test_custom_timezone(self):
        tz = timezone(timedelta(hours=-5))
        cal = BusinessHoursCalendar(tz=tz)
        # 14:00 UTC Monday is 09:00 local
        start = datetime(2024, 1, 1, 14, 0, tzinfo=UTC)
        due = cal.add_duration(start, timedelta(hours=2))
        assert due == datetime(2024, 1, 1, 11, 0, tzinfo=tz)


class TestElapsed:
    def test_overnight(self):
        cal = BusinessHoursCalendar()
        assert cal.elapsed(
            datetime(2024, 1, 1, 16, 0, tzinfo=UTC), datetime(2024, 1, 2, 10, 0, tzinfo=UTC),
        ) == timedelta(hours=2)

    def test_end_before_start(self):
        cal = BusinessHoursCalendar()
        assert cal.elapsed(MONDAY_9, MONDAY_9 - timedelta(hours=1)) == timedelta(0)

    def test_whole_week(self):
        cal = BusinessHoursCalendar()
        assert cal.elapsed(MONDAY_9, MONDAY_9 + timedelta(days=7)) == timedelta(hours=40)

    def test_wall_clock(self):
        cal = WallClockCalendar()
        assert cal.elapsed(MONDAY_9, MONDAY_9 + timedelta(days=2)) == timedelta(hours=48)
        assert cal.add_duration(MONDAY_9, timedelta(hours=30)) == MONDAY_9 + timedelta(hours=30)


class TestValidation:
    def test_end_after_start(self):
        with pytest.raises(ValueError):
            BusinessHoursCalendar(workday_start=time(17), workday_end=time(9))

    def test_working_days_required(self):
        with pytest.raises(ValueError):
            BusinessHoursCalendar(working_days=frozenset())


class TestCalendarProperties:
    @settings(max_examples=150)
    @given(
        start_offset=st.integers(min_value=0, max_value=14 * 24 * 60),
        minutes=st.integers(min_value=1, max_value=80 * 60),
    )
    def test_elapsed_inverts_add_duration(self, start_offset, minutes):
        cal = BusinessHoursCalendar(holidays=frozenset({date(2024, 1, 3)}))
        start = datetime(2024, 1, 1, 0, 0, tzinfo=UTC) + timedelta(minutes=start_offset)
        duration = timedelta(minutes=minutes)
        assert cal.elapsed(start, cal.add_duration(start, duration)) == duration
