"""Timestamp, rounding and number helpers shared by the engine."""

from datetime import date, datetime, time, timedelta, tzinfo
from decimal import Decimal, ROUND_HALF_UP
from typing import Optional

from sprint_engine.errors import MalformedTimestamp

# Jira formats: "2024-10-31T12:11:56.289-0400", "2024-10-31T12:11:56.289+00:00"
# or "2024-10-31T12:11:56.289Z". %z accepts all three since Python 3.7.
ZONED_FORMATS = [
    "%Y-%m-%dT%H:%M:%S.%f%z",
    "%Y-%m-%dT%H:%M:%S%z",
]

NAIVE_FORMATS = [
    "%Y-%m-%dT%H:%M:%S.%f",
    "%Y-%m-%dT%H:%M:%S",
    "%Y-%m-%d",
]


def parse_jira_timestamp(value: str, default_tz: tzinfo) -> datetime:
    """Parse a Jira timestamp into a timezone-aware datetime.

    Offsets present in the string are kept. Naive timestamps and plain
    dates are interpreted in ``default_tz``.

    Raises:
        MalformedTimestamp: if the value matches none of the accepted formats.
    """
    if not value or not isinstance(value, str):
        raise MalformedTimestamp(value)

    raw = value.strip()
    for fmt in ZONED_FORMATS:
        try:
            return datetime.strptime(raw, fmt)
        except ValueError:
            continue

    for fmt in NAIVE_FORMATS:
        try:
            return datetime.strptime(raw, fmt).replace(tzinfo=default_tz)
        except ValueError:
            continue

    raise MalformedTimestamp(value)


def parse_optional_timestamp(value: Optional[str], default_tz: tzinfo) -> Optional[datetime]:
    """Like parse_jira_timestamp but blank values give None."""
    if value is None or (isinstance(value, str) and not value.strip()):
        return None
    return parse_jira_timestamp(value, default_tz)


def start_of_day(day: date, tz: tzinfo) -> datetime:
    """Midnight of ``day`` in ``tz``."""
    return datetime.combine(day, time.min, tzinfo=tz)


def local_date(moment: datetime, tz: tzinfo) -> date:
    """Calendar date of an aware datetime as seen in ``tz``."""
    return moment.astimezone(tz).date()


def iter_days(first: date, last: date):
    """Yield every calendar date from first to last inclusive."""
    current = first
    while current <= last:
        yield current
        current += timedelta(days=1)


def is_weekend(day: date) -> bool:
    return day.weekday() >= 5


def round2(value: float) -> float:
    """Round half-up to two decimals.

    Works on the exact binary value of the float, so 0.125 -> 0.13 but
    1.005 -> 1.0 (1.005 is stored as 1.00499...).
    """
    return float(Decimal(value).quantize(Decimal("0.01"), rounding=ROUND_HALF_UP))


def parse_number(value) -> Optional[float]:
    """Parse a numeric Jira field value; blank or non-numeric gives None."""
    if value is None:
        return None
    if isinstance(value, (int, float)):
        return float(value)
    text = str(value).strip()
    if not text:
        return None
    text = text.replace(",", ".")
    try:
        return float(text)
    except ValueError:
        return None
