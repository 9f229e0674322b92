"""Date arithmetic for the rolling points-expiry cycle, annual resets, and birthdays."""

from __future__ import annotations

import calendar
from dataclasses import dataclass
from datetime import date, datetime, timedelta, timezone, tzinfo

DEFAULT_CYCLE_DAYS = 90


@dataclass(frozen=True, slots=True)
class CyclePosition:
    """Where an account sits within its registration-anchored cycle."""

    days_since_registration: int
    cycles_completed: int
    cycle_start: date
    next_cycle_start: date


def cycle_position(
    registration_date: date,
    today: date,
    *,
    cycle_days: int = DEFAULT_CYCLE_DAYS,
) -> CyclePosition:
    days = max((today - registration_date).days, 0)
    cycles = days // cycle_days
    start = registration_date + timedelta(days=cycles * cycle_days)
    return CyclePosition(
        days_since_registration=days,
        cycles_completed=cycles,
        cycle_start=start,
        next_cycle_start=start + timedelta(days=cycle_days),
    )


def local_day(value: datetime, zone: tzinfo | None = None) -> date:
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(zone or timezone.utc).date()


def expiry_due(
    registration_date: date,
    last_points_reset: datetime | date | None,
    today: date,
    *,
    cycle_days: int = DEFAULT_CYCLE_DAYS,
    zone: tzinfo | None = None,
) -> CyclePosition | None:
    """Return the completed cycle whose boundary has not been applied yet, if any.

    Comparison is against the cycle boundary rather than ``today`` so that
    repeated runs within the same cycle never expire twice. A datetime reset
    stamp is read in ``zone`` so it lands on the same calendar as ``today``;
    naive stamps are taken as UTC.
    """

    position = cycle_position(registration_date, today, cycle_days=cycle_days)
    if position.cycles_completed < 1:
        return None
    if last_points_reset is None:
        return position
    reset_day = local_day(last_points_reset, zone) if isinstance(last_points_reset, datetime) else last_points_reset
    if reset_day < position.cycle_start:
        return position
    return None


def annual_reset_due(last_annual_reset: date | None, registration_date: date, today: date) -> bool:
    anchor = last_annual_reset or registration_date
    return anchor.year < today.year


def is_birthday(birth_date: date | None, today: date) -> bool:
    """Feb 29 birthdays are celebrated on Feb 28 outside leap years."""

    if birth_date is None:
        return False
    if birth_date.month == 2 and birth_date.day == 29 and not calendar.isleap(today.year):
        return today.month == 2 and today.day == 28
    return (birth_date.month, birth_date.day) == (today.month, today.day)


__all__ = [
    "CyclePosition",
    "DEFAULT_CYCLE_DAYS",
    "annual_reset_due",
    "cycle_position",
    "expiry_due",
    "is_birthday",
    "local_day",
]
