from __future__ import annotations

import datetime as dt
import math
import re
import uuid
from typing import List, Union

from .errors import InvalidDateError

DATE_PATTERN = re.compile(r"^\d{4}-\d{2}-\d{2}$")
MIN_YEAR = 1900
MAX_YEAR = 2100

MS_PER_SECOND = 1000
MS_PER_MINUTE = 60 * MS_PER_SECOND
MS_PER_HOUR = 60 * MS_PER_MINUTE

WEEKDAY_NAMES = ("Monday", "Tuesday", "Wednesday", "Thursday", "Friday", "Saturday", "Sunday")


def new_id(prefix: str) -> str:
    return f"{prefix}-{uuid.uuid4().hex[:12]}"


def truncate_ms(moment: dt.datetime) -> dt.datetime:
    """Drop sub-millisecond precision so durations stay whole milliseconds."""
    return moment.replace(microsecond=moment.microsecond // 1000 * 1000)


def parse_iso_date(value: Union[str, dt.date]) -> dt.date:
    """Parse a ``YYYY-MM-DD`` string into a date, rejecting impossible dates."""
    if isinstance(value, dt.datetime):
        raise InvalidDateError(f"Expected a date, got a datetime: {value!r}")
    if isinstance(value, dt.date):
        day = value
    else:
        if not isinstance(value, str) or not DATE_PATTERN.match(value):
            raise InvalidDateError(f"Date must be in YYYY-MM-DD format: {value!r}")
        try:
            day = dt.date.fromisoformat(value)
        except ValueError as exc:
            raise InvalidDateError(f"Not a real calendar date: {value!r}") from exc
    if not MIN_YEAR <= day.year <= MAX_YEAR:
        raise InvalidDateError(f"Year must be between {MIN_YEAR} and {MAX_YEAR}: {value!r}")
    return day


def monday_of(day: dt.date) -> dt.date:
    return day - dt.timedelta(days=day.weekday())


def week_dates(monday: dt.date) -> List[dt.date]:
    """Monday through Friday of the week starting at ``monday``."""
    return [monday + dt.timedelta(days=offset) for offset in range(5)]


def ms_between(start: dt.datetime, end: dt.datetime) -> int:
    return (end - start) // dt.timedelta(milliseconds=1)


def add_ms(moment: dt.datetime, milliseconds: int) -> dt.datetime:
    return moment + dt.timedelta(milliseconds=milliseconds)


def format_hms(milliseconds: int) -> str:
    total_seconds = max(0, int(milliseconds)) // MS_PER_SECOND
    hours, remainder = divmod(total_seconds, 3600)
    minutes, seconds = divmod(remainder, 60)
    return f"{hours:02d}:{minutes:02d}:{seconds:02d}"


def format_hm(milliseconds: int) -> str:
    total_minutes = max(0, int(milliseconds)) // MS_PER_MINUTE
    hours, minutes = divmod(total_minutes, 60)
    return f"{hours:02d}:{minutes:02d}"


def ms_to_hours(milliseconds: int) -> float:
    return milliseconds / MS_PER_HOUR


def round_half_up(value: float) -> int:
    return int(math.floor(value + 0.5))


def efficiency(task_time: int, working_time: int) -> int:
    if working_time <= 0:
        return 0
    return round_half_up(task_time / working_time * 100)
