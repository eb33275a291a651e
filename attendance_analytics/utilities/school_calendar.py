"""
School calendar helpers.

A school year is written "YYYY-YYYY" and runs from mid-August to mid-June.
School days are weekdays that are not configured holidays.
"""

from datetime import date, datetime, timedelta
from typing import Iterable, Iterator, Optional, Tuple, Union

from ..exceptions import InvalidRequestError
from .config import TimelineSettings

DateLike = Union[date, datetime, str]


def parse_date(value: DateLike, name: str = "date") -> date:
    """Coerce a date, datetime or ISO YYYY-MM-DD string to a date."""
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    if isinstance(value, str):
        try:
            return date.fromisoformat(value.strip())
        except ValueError:
            pass
    raise InvalidRequestError(f"{name} must be a YYYY-MM-DD date, got {value!r}", {name: value})


def parse_date_range(start: DateLike, end: DateLike) -> Tuple[date, date]:
    start_date = parse_date(start, "start_date")
    end_date = parse_date(end, "end_date")
    if start_date > end_date:
        raise InvalidRequestError(
            f"start_date {start_date} is after end_date {end_date}",
            {"start_date": start_date.isoformat(), "end_date": end_date.isoformat()},
        )
    return start_date, end_date


def get_current_school_year(today: Optional[date] = None, rollover_month: int = 8) -> str:
    """
    Get the school year containing a date.

    Examples:
        >>> get_current_school_year(date(2024, 9, 3))
        '2024-2025'
        >>> get_current_school_year(date(2025, 3, 1))
        '2024-2025'
    """
    today = today or date.today()
    if today.month >= rollover_month:
        return f"{today.year}-{today.year + 1}"
    return f"{today.year - 1}-{today.year}"


def school_year_start_year(school_year: str) -> int:
    """Accepts "2024" or "2024-2025" and returns 2024."""
    text = str(school_year).strip()
    head = text.split("-")[0]
    if len(head) != 4 or not head.isdigit():
        raise InvalidRequestError(f"School year must look like YYYY-YYYY, got {school_year!r}")
    if "-" in text:
        tail = text.split("-", 1)[1]
        if not tail.isdigit() or int(tail[-2:]) != (int(head) + 1) % 100:
            raise InvalidRequestError(f"School year must span consecutive years, got {school_year!r}")
    return int(head)


def normalize_school_year(school_year: str) -> str:
    start = school_year_start_year(school_year)
    return f"{start}-{start + 1}"


def school_year_bounds(
    school_year: str, settings: Optional[TimelineSettings] = None
) -> Tuple[date, date]:
    """
    First and last instructional dates of a school year.

    Example:
        >>> school_year_bounds("2024-2025")
        (datetime.date(2024, 8, 15), datetime.date(2025, 6, 12))
    """
    settings = settings or TimelineSettings()
    start_year = school_year_start_year(school_year)
    start_month, start_day = settings.start_month_day
    end_month, end_day = settings.end_month_day
    return date(start_year, start_month, start_day), date(start_year + 1, end_month, end_day)


def is_school_day(day: date, holidays: Iterable[date] = ()) -> bool:
    """Weekdays that are not holidays."""
    if day.weekday() >= 5:
        return False
    return day not in set(holidays)


def iter_school_days(start: date, end: date, holidays: Iterable[date] = ()) -> Iterator[date]:
    """Yield school days from start to end inclusive, ascending."""
    holiday_set = set(holidays)
    current = start
    while current <= end:
        if is_school_day(current, holiday_set):
            yield current
        current += timedelta(days=1)
