from dataclasses import dataclass
from datetime import date, datetime
from typing import Optional
from zoneinfo import ZoneInfo

from config import get_settings


@dataclass(frozen=True)
class Period:
    slug: str
    start: date
    end: date


def local_today() -> date:
    tz = ZoneInfo(get_settings().timezone)
    return datetime.now(tz).date()


def month_period(day: date) -> Period:
    first = day.replace(day=1)
    if first.month == 12:
        next_month = first.replace(year=first.year + 1, month=1)
    else:
        next_month = first.replace(month=first.month + 1)
    end = next_month - date.resolution
    return Period(f"{first.year:04d}-{first.month:02d}", first, end)


def previous_month_start(day: date) -> date:
    first = day.replace(day=1)
    return (first - date.resolution).replace(day=1)


def year_period(year: int) -> Period:
    return Period(str(year), date(year, 1, 1), date(year, 12, 31))


def resolve_month(value: Optional[str], *, today: Optional[date] = None) -> Period:
    """Parse a ``YYYY-MM`` query value; missing means the current month."""
    today = today or local_today()
    if not value:
        return month_period(today)
    parts = value.strip().split("-")
    if len(parts) != 2 or not all(part.isdigit() for part in parts):
        raise ValueError("Month must use the YYYY-MM format")
    year, month = int(parts[0]), int(parts[1])
    if not 1 <= month <= 12:
        raise ValueError("Month must be between 01 and 12")
    if not 1900 <= year <= 2100:
        raise ValueError("Year must be between 1900 and 2100")
    return month_period(date(year, month, 1))
