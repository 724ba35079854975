"""
Recurrence evaluation.

occurs_on() answers whether a recurrence pattern predicts an occurrence on a
given day. It is pure: it reads the descriptor and the date and nothing else,
and it is called once per (task, date) pair for every rendered range.
"""
import calendar
from datetime import datetime, timedelta
from typing import Optional

from dates import date_key, parse_optional, to_canonical_date, to_iso
from errors import ValidationError


def js_weekday(day: datetime) -> int:
    """Weekday number with 0=Sunday .. 6=Saturday."""
    return (day.weekday() + 1) % 7


def is_recurring(recurrence) -> bool:
    return recurrence is not None and recurrence.type != "none"


def lists_date(dates, key: str) -> bool:
    """True if any entry of an ISO date list falls on the YYYY-MM-DD key."""
    return any(d[:10] == key for d in dates or ())


def occurs_on(recurrence, candidate) -> bool:
    """
    Check if a recurrence pattern includes a specific date.

    Precedence: before startDate -> False, after endDate -> False,
    listed in exceptions -> False, then the type-specific pattern.
    additionalDates never make this True; visibility of those dates depends on
    a completion record and is decided by the projector.
    """
    if recurrence is None:
        return False

    day = to_canonical_date(candidate)
    start = parse_optional(recurrence.start_date, "startDate")
    end = parse_optional(recurrence.end_date, "endDate")

    if start is not None and day < start:
        return False
    if end is not None and day > end:
        return False
    if lists_date(recurrence.exceptions, date_key(day)):
        return False

    return _matches_pattern(recurrence, day, start)


def _matches_pattern(recurrence, day: datetime, start: Optional[datetime]) -> bool:
    kind = recurrence.type

    if kind == "none":
        return start is not None and day == start

    if kind in ("daily", "interval"):
        interval = recurrence.interval or 1
        if start is None:
            return True
        return (day - start).days % interval == 0

    if kind == "weekly":
        return js_weekday(day) in recurrence.days

    if kind == "monthly":
        months_since = None
        if start is not None:
            months_since = (day.year - start.year) * 12 + day.month - start.month
        return _interval_ok(recurrence.interval, months_since) and _matches_day_in_month(recurrence, day, start)

    if kind == "yearly":
        if day.month != recurrence.month:
            return False
        years_since = day.year - start.year if start is not None else None
        return _interval_ok(recurrence.interval, years_since) and _matches_day_in_month(recurrence, day, start)

    raise ValidationError("recurrence.type", f"unknown recurrence type '{kind}'")


def _interval_ok(interval: Optional[int], units_since_start: Optional[int]) -> bool:
    if not interval or interval <= 1 or units_since_start is None:
        return True
    return units_since_start % interval == 0


def _matches_day_in_month(recurrence, day: datetime, start: Optional[datetime]) -> bool:
    if recurrence.week_pattern is not None:
        pattern = recurrence.week_pattern
        return is_nth_weekday(day, pattern.ordinal, pattern.day_of_week)

    if recurrence.day_of_month:
        return day.day in recurrence.day_of_month

    # No sub-pattern stored: repeat on the start date's day of month
    return start is not None and day.day == start.day


def is_nth_weekday(day: datetime, ordinal: int, weekday: int) -> bool:
    """Check if day is the nth (or last, for ordinal -1) given weekday of its month."""
    if js_weekday(day) != weekday:
        return False

    if ordinal == -1:
        days_in_month = calendar.monthrange(day.year, day.month)[1]
        return day.day + 7 > days_in_month

    # Count which occurrence this is
    first_of_month = day.replace(day=1)
    days_until = (weekday - js_weekday(first_of_month)) % 7
    first_occurrence = first_of_month + timedelta(days=days_until)
    occurrence_num = ((day.day - first_occurrence.day) // 7) + 1
    return occurrence_num == ordinal


def next_occurrence(recurrence, after, horizon_days: int = 800) -> Optional[datetime]:
    """
    First date strictly after `after` that the pattern predicts.
    Returns None when nothing matches within the horizon (ended series,
    impossible pattern such as the 31st of February).
    """
    if recurrence is None:
        return None

    current = to_canonical_date(after)
    end = parse_optional(recurrence.end_date, "endDate")
    for _ in range(horizon_days):
        current += timedelta(days=1)
        if end is not None and current > end:
            return None
        if occurs_on(recurrence, current):
            return current
    return None


def add_exception(recurrence, date):
    """Copy of the recurrence with date suppressed. Adding twice is a no-op."""
    key = date_key(date)
    if lists_date(recurrence.exceptions, key):
        return recurrence
    return recurrence.model_copy(update={"exceptions": [*recurrence.exceptions, key]})


def with_end_date(recurrence, date):
    """Copy of the recurrence whose last valid day is `date`."""
    return recurrence.model_copy(update={"end_date": to_iso(date)})
