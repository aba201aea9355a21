"""
Module: govflow_engines.sla
Responsibility:
    Working-day arithmetic for stage SLAs: due dates, elapsed working days,
    and the carry-forward budget when a query freezes the clock.

Architecture position:
    Engines -- pure calculation layer, zero I/O.
    May only import govflow_kernel.domain.

Invariants enforced:
    - Purity: no clock access; "now" is always a parameter.
    - Time of day is preserved by add_working_days; only the date moves.
    - The walk steps one calendar day at a time, so a holiday landing on a
      weekend is not counted twice.

Failure modes:
    - ValueError for negative budgets or naive datetimes.

Usage:
    from govflow_engines.sla import add_working_days
    from govflow_kernel.domain.calendar import WorkingCalendar

    cal = WorkingCalendar().with_holidays(date(2026, 3, 3))
    add_working_days(datetime(2026, 3, 2, 9, tzinfo=UTC), 3, cal)
    # -> 2026-03-06 09:00 UTC (Tue is a holiday, so Wed/Thu/Fri)
"""

from __future__ import annotations

from datetime import date, datetime, timedelta

from govflow_kernel.domain.calendar import WorkingCalendar
from govflow_kernel.domain.workflow import CarryRounding, SlaCarryPolicy
from govflow_engines.tracer import traced_engine

_ONE_DAY = timedelta(days=1)


def _require_aware(value: datetime, name: str) -> None:
    if value.tzinfo is None:
        raise ValueError(f"{name} must be timezone-aware")


def add_working_days(start: datetime, days: int, calendar: WorkingCalendar) -> datetime:
    """
    Move ``start`` forward by ``days`` working days.

    Each step advances one calendar day; the step counts only if the new
    day is a working day.  ``days == 0`` returns ``start`` unchanged.
    """
    _require_aware(start, "start")
    if days < 0:
        raise ValueError(f"Working day budget cannot be negative: {days}")

    current = start
    remaining = days
    while remaining > 0:
        current = current + _ONE_DAY
        if calendar.is_working_day(current.date()):
            remaining -= 1
    return current


def working_days_between(start: date, end: date, calendar: WorkingCalendar) -> int:
    """Working days in the half-open interval (start, end]. Zero if end <= start."""
    if end <= start:
        return 0
    count = 0
    day = start + _ONE_DAY
    while day <= end:
        if calendar.is_working_day(day):
            count += 1
        day += _ONE_DAY
    return count


@traced_engine("sla", "1.0", fingerprint_fields=("created_at", "sla_days"))
def compute_due_at(
    *,
    created_at: datetime,
    sla_days: int | None,
    calendar: WorkingCalendar,
) -> datetime | None:
    """Task SLA deadline, or None for stages without an SLA."""
    if sla_days is None:
        return None
    return add_working_days(created_at, sla_days, calendar)


@traced_engine(
    "sla_carry", "2.0",
    fingerprint_fields=("paused_at", "due_at", "policy"),
)
def carry_remaining_days(
    *,
    paused_at: datetime,
    due_at: datetime,
    calendar: WorkingCalendar,
    policy: SlaCarryPolicy,
) -> int:
    """
    Working days of the stage budget left when the SLA is paused.

    Counts whole working-day steps from the pause instant that still land
    on or before the due instant.  What is left after the last whole step
    is a partial day: FLOOR drops it, CEIL counts it as one more day.  A
    pause at or after the due instant carries nothing.

    Resuming immediately with a FLOOR carry never lands after the
    original due instant.  The result is never below
    ``policy.minimum_remaining_days``.
    """
    _require_aware(paused_at, "paused_at")
    _require_aware(due_at, "due_at")

    remaining = 0
    if paused_at < due_at:
        reached = paused_at
        while True:
            step = add_working_days(reached, 1, calendar)
            if step > due_at:
                break
            remaining += 1
            reached = step
        if policy.rounding == CarryRounding.CEIL and reached < due_at:
            remaining += 1

    return max(remaining, policy.minimum_remaining_days)


@traced_engine("sla_resume", "1.0", fingerprint_fields=("resumed_at", "remaining_days"))
def resume_due_at(
    *,
    resumed_at: datetime,
    remaining_days: int,
    calendar: WorkingCalendar,
) -> datetime:
    """New deadline after a query response, counted from the resume instant."""
    return add_working_days(resumed_at, max(remaining_days, 0), calendar)


def is_breached(due_at: datetime | None, now: datetime) -> bool:
    return due_at is not None and now > due_at
