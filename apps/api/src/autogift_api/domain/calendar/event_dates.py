"""Resolve recurring gift events to their next concrete occurrence."""

from __future__ import annotations

import calendar
from dataclasses import dataclass
from datetime import date, timedelta


@dataclass(frozen=True)
class FixedHoliday:
    month: int
    day: int

    def on(self, year: int) -> date:
        return date(year, self.month, self.day)


@dataclass(frozen=True)
class FloatingHoliday:
    """The ``ordinal``-th ``weekday`` (Monday=0) of ``month``."""

    month: int
    weekday: int
    ordinal: int

    def on(self, year: int) -> date:
        first = date(year, self.month, 1)
        offset = (self.weekday - first.weekday()) % 7
        return first + timedelta(days=offset + 7 * (self.ordinal - 1))


HOLIDAYS: dict[str, FixedHoliday | FloatingHoliday] = {
    "new_years_day": FixedHoliday(1, 1),
    "valentines_day": FixedHoliday(2, 14),
    "independence_day": FixedHoliday(7, 4),
    "halloween": FixedHoliday(10, 31),
    "christmas": FixedHoliday(12, 25),
    "mothers_day": FloatingHoliday(5, calendar.SUNDAY, 2),
    "fathers_day": FloatingHoliday(6, calendar.SUNDAY, 3),
    "thanksgiving": FloatingHoliday(11, calendar.THURSDAY, 4),
}


def _parse_month_day(value: str) -> tuple[int, int] | None:
    parts = value.strip().split("-")
    if len(parts) == 3:
        parts = parts[1:]
    if len(parts) != 2:
        return None
    try:
        month, day = int(parts[0]), int(parts[1])
    except ValueError:
        return None
    if not 1 <= month <= 12:
        return None
    # Validate against a leap year so Feb 29 is accepted.
    if not 1 <= day <= calendar.monthrange(2000, month)[1]:
        return None
    return month, day


def _anniversary(year: int, month: int, day: int) -> date:
    if month == 2 and day == 29 and not calendar.isleap(year):
        return date(year, 2, 28)
    return date(year, month, day)


def resolve_birthday(dob: str | None, reference_date: date) -> date | None:
    """Next anniversary of ``dob`` on or after ``reference_date``.

    ``dob`` may be ``MM-DD`` or ``YYYY-MM-DD``. Malformed input yields ``None``.
    Feb 29 birthdays fall on Feb 28 in non-leap years.
    """

    if not dob:
        return None
    parsed = _parse_month_day(dob)
    if parsed is None:
        return None
    month, day = parsed
    candidate = _anniversary(reference_date.year, month, day)
    if candidate < reference_date:
        candidate = _anniversary(reference_date.year + 1, month, day)
    return candidate


def resolve_holiday(key: str | None, reference_date: date) -> date | None:
    """Next occurrence of the named holiday on or after ``reference_date``."""

    if not key:
        return None
    holiday = HOLIDAYS.get(key.strip().lower())
    if holiday is None:
        return None
    return _next_on_or_after(holiday, reference_date, reference_date.year)


def _next_on_or_after(holiday: FixedHoliday | FloatingHoliday, reference_date: date, year: int) -> date:
    occurrence = holiday.on(year)
    if occurrence < reference_date:
        return _next_on_or_after(holiday, reference_date, year + 1)
    return occurrence


def resolve_custom(anchor: str | None, reference_date: date) -> date | None:
    """Custom events recur yearly on the anchor's month and day."""

    return resolve_birthday(anchor, reference_date)


__all__ = [
    "HOLIDAYS",
    "FixedHoliday",
    "FloatingHoliday",
    "resolve_birthday",
    "resolve_custom",
    "resolve_holiday",
]
