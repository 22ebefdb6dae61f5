"""
BusinessCalendar -- Duration arithmetic for SLA deadlines.

Responsibility:
    Converts an SLA duration into a deadline and measures how much of that
    duration has elapsed, either in wall-clock time or counting only
    working hours.

Architecture position:
    Kernel > Domain -- pure, zero I/O.  "Now" is never read here; callers
    pass both ends of every interval (the Clock supplies them).

Failure modes:
    - ValueError at construction if the working window is empty or no
      working day is configured.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from datetime import date, datetime, time, timedelta, timezone, tzinfo

_ZERO = timedelta(0)


class BusinessCalendar(ABC):
    """Deadline and elapsed-time arithmetic."""

    @abstractmethod
    def add_duration(self, start: datetime, duration: timedelta) -> datetime:
        """Return the instant ``duration`` of counted time after ``start``."""
        ...

    @abstractmethod
    def elapsed(self, start: datetime, end: datetime) -> timedelta:
        """Return counted time between ``start`` and ``end`` (never negative)."""
        ...


class WallClockCalendar(BusinessCalendar):
    """Every second counts: 24x7 arithmetic."""

    def add_duration(self, start: datetime, duration: timedelta) -> datetime:
        return start + duration

    def elapsed(self, start: datetime, end: datetime) -> timedelta:
        return max(end - start, _ZERO)


class BusinessHoursCalendar(BusinessCalendar):
    """
    Counts only time inside a daily working window on working days.

    Contract:
        ``working_days`` uses ``date.weekday()`` numbering (Monday == 0).
        ``holidays`` are whole non-working dates.  All window arithmetic is
        done in ``tz``; results carry that timezone.
    """

    def __init__(
        self,
        workday_start: time = time(9, 0),
        workday_end: time = time(17, 0),
        working_days: frozenset[int] = frozenset({0, 1, 2, 3, 4}),
        holidays: frozenset[date] = frozenset(),
        tz: tzinfo = timezone.utc,
    ) -> None:
        if workday_end <= workday_start:
            raise ValueError(
                f"workday_end ({workday_end}) must be after workday_start ({workday_start})"
            )
        if not working_days:
            raise ValueError("At least one working day is required")
        self.workday_start = workday_start
        self.workday_end = workday_end
        self.working_days = frozenset(working_days)
        self.holidays = frozenset(holidays)
        self.tz = tz

    def is_working_day(self, day: date) -> bool:
        return day.weekday() in self.working_days and day not in self.holidays

    def _window(self, day: date) -> tuple[datetime, datetime]:
        return (
            datetime.combine(day, self.workday_start, tzinfo=self.tz),
            datetime.combine(day, self.workday_end, tzinfo=self.tz),
        )

    def add_duration(self, start: datetime, duration: timedelta) -> datetime:
        cursor = start.astimezone(self.tz)
        remaining = duration
        if remaining <= _ZERO:
            return cursor

        while True:
            day = cursor.date()
            if self.is_working_day(day):
                open_at, close_at = self._window(day)
                window_start = max(cursor, open_at)
                if window_start < close_at:
                    available = close_at - window_start
                    if remaining <= available:
                        return window_start + remaining
                    remaining -= available
            cursor = datetime.combine(day + timedelta(days=1), time(0), tzinfo=self.tz)

    def elapsed(self, start: datetime, end: datetime) -> timedelta:
        start = start.astimezone(self.tz)
        end = end.astimezone(self.tz)
        if end <= start:
            return _ZERO

        total = _ZERO
        day = start.date()
        while day <= end.date():
            if self.is_working_day(day):
                open_at, close_at = self._window(day)
                lo = max(start, open_at)
                hi = min(end, close_at)
                if hi > lo:
                    total += hi - lo
            day += timedelta(days=1)
        return total
