"""Parsing and formatting of scan-index acquisition times."""

from __future__ import annotations

from datetime import date, datetime, timedelta
from typing import Optional

import pandas as pd

from bidscurate.utils.errors import UsageError

__all__ = [
    "NA",
    "ACQ_TIME_FORMAT",
    "parse_acq_time",
    "format_acq_time",
    "shift_days",
    "replace_date",
    "same_day",
    "within",
]

NA = "n/a"
ACQ_TIME_FORMAT = "%Y-%m-%dT%H:%M:%S"


def parse_acq_time(value) -> Optional[datetime]:
    """Return a naive :class:`datetime` or *None* for missing values.

    Fractional seconds and time-zone suffixes are dropped so that values
    written by other tools compare equal to the ones written here.

    Args:
        value: String from a ``acq_time`` column, a datetime or a pandas
            missing-value marker.

    Returns:
        Parsed timestamp truncated to whole seconds, or *None*.

    Raises:
        UsageError: When *value* is text that is not a date or timestamp.
    """
    if value is None:
        return None
    if not isinstance(value, str) and pd.isna(value):
        return None
    if isinstance(value, pd.Timestamp):
        value = value.to_pydatetime()
    if isinstance(value, datetime):
        return value.replace(microsecond=0, tzinfo=None)
    text = str(value).strip()
    if not text or text.lower() in {NA, "nan", "nat", "none"}:
        return None
    text = text.split(".", 1)[0].rstrip("Z")
    if "+" in text[10:]:
        text = text[: 10 + text[10:].index("+")]
    text = text.replace(" ", "T")
    for fmt in (ACQ_TIME_FORMAT, "%Y-%m-%d"):
        try:
            return datetime.strptime(text, fmt)
        except ValueError:
            continue
    raise UsageError(f"Invalid acquisition time {value!r}")


def format_acq_time(value: Optional[datetime]) -> str:
    """Return the scan-index text for *value* (``n/a`` when unknown)."""
    if value is None or pd.isna(value):
        return NA
    return value.strftime(ACQ_TIME_FORMAT)


def shift_days(value: Optional[datetime], days: int) -> Optional[datetime]:
    """Return *value* moved by a whole number of *days* (``None`` stays ``None``)."""
    if value is None:
        return None
    return value + timedelta(days=int(days))


def replace_date(value: datetime, new_date: date) -> datetime:
    """Return *value* with its calendar date replaced; time-of-day is kept."""
    return datetime.combine(new_date, value.time())


def same_day(a: Optional[datetime], b: Optional[datetime]) -> bool:
    if a is None or b is None:
        return False
    return a.date() == b.date()


def within(a: Optional[datetime], b: Optional[datetime], tolerance: timedelta) -> bool:
    """True when both timestamps are known and differ by at most *tolerance*."""
    if a is None or b is None:
        return False
    return abs(a - b) <= tolerance
