"""
WorkingCalendar -- per-authority definition of working days.

Pure value object.  The SLA engine walks it day by day; persistence of the
weekday set and holiday list lives in ``models/authority.py``.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date

SATURDAY = 5
SUNDAY = 6
DEFAULT_NON_WORKING_WEEKDAYS = frozenset({SATURDAY, SUNDAY})


@dataclass(frozen=True)
class WorkingCalendar:
    """Non-working weekdays (``date.weekday()`` numbers) plus explicit holidays."""

    non_working_weekdays: frozenset[int] = DEFAULT_NON_WORKING_WEEKDAYS
    holidays: frozenset[date] = field(default_factory=frozenset)

    def __post_init__(self) -> None:
        bad = [d for d in self.non_working_weekdays if not 0 <= d <= 6]
        if bad:
            raise ValueError(f"Invalid weekday numbers: {sorted(bad)}")
        if len(self.non_working_weekdays) == 7:
            raise ValueError("A calendar needs at least one working weekday")

    def is_working_day(self, day: date) -> bool:
        return day.weekday() not in self.non_working_weekdays and day not in self.holidays

    def with_holidays(self, *days: date) -> WorkingCalendar:
        return WorkingCalendar(
            non_working_weekdays=self.non_working_weekdays,
            holidays=self.holidays | frozenset(days),
        )
