"""
Calendar-day normalization.

Every "which day" question in the tracker is answered with a canonical date:
the timezone-aware instant at 00:00:00.000 UTC of that calendar day. Completions
are stored and looked up by it, recurrence is evaluated against it, and two
values are the "same day" only if their canonical dates are equal.
"""
import re
from datetime import date, datetime, timedelta, timezone
from typing import Iterator, Optional

from errors import ValidationError

DATE_ONLY = re.compile(r"^\d{4}-\d{2}-\d{2}$")


def to_canonical_date(value, field: str = "date") -> datetime:
    """
    Normalize a date input to UTC midnight.

    Accepts YYYY-MM-DD strings, any ISO-8601 string, datetime objects and date
    objects. Aware datetimes (and ISO strings carrying an offset or Z) use their
    UTC calendar day; naive datetimes use their own calendar day.
    Raises ValidationError for anything else, including None.
    """
    if isinstance(value, datetime):
        if value.tzinfo is not None:
            value = value.astimezone(timezone.utc)
        day = value.date()
    elif isinstance(value, date):
        day = value
    elif isinstance(value, str):
        day = _parse_string(value.strip(), field)
    else:
        raise ValidationError(field, f"expected a date, got {type(value).__name__}")

    return datetime(day.year, day.month, day.day, tzinfo=timezone.utc)


def _parse_string(value: str, field: str) -> date:
    if DATE_ONLY.match(value):
        try:
            year, month, day = map(int, value.split("-"))
            return date(year, month, day)
        except ValueError:
            raise ValidationError(field, f"invalid calendar date '{value}'")

    try:
        parsed = datetime.fromisoformat(value)
    except ValueError:
        raise ValidationError(field, f"malformed date '{value}'")

    if parsed.tzinfo is not None:
        parsed = parsed.astimezone(timezone.utc)
    return parsed.date()


def date_key(value) -> str:
    """YYYY-MM-DD of the canonical date."""
    return to_canonical_date(value).strftime("%Y-%m-%d")


def to_iso(value) -> str:
    """Serialized form used in storage and recurrence fields: YYYY-MM-DDT00:00:00.000Z"""
    return to_canonical_date(value).strftime("%Y-%m-%dT00:00:00.000Z")


def same_day(a, b) -> bool:
    return to_canonical_date(a) == to_canonical_date(b)


def add_days(value, days: int) -> datetime:
    return to_canonical_date(value) + timedelta(days=days)


def day_before(value) -> datetime:
    return add_days(value, -1)


def iter_days(start, end) -> Iterator[datetime]:
    """Yield canonical dates from start to end, both inclusive."""
    current = to_canonical_date(start, "start")
    last = to_canonical_date(end, "end")
    if last < current:
        raise ValidationError("end", "must not be before start")
    while current <= last:
        yield current
        current += timedelta(days=1)


class Clock:
    """Source of 'now'. Injected wherever the engine needs today's date."""

    def now(self) -> datetime:
        return datetime.now()

    def today(self) -> datetime:
        return to_canonical_date(self.now())

    def current_time(self) -> str:
        """Local wall-clock time as HH:MM."""
        return self.now().strftime("%H:%M")


class FixedClock(Clock):
    def __init__(self, now: datetime):
        self._now = now

    def now(self) -> datetime:
        return self._now


system_clock = Clock()


def parse_optional(value, field: str = "date") -> Optional[datetime]:
    if value is None or value == "":
        return None
    return to_canonical_date(value, field)
