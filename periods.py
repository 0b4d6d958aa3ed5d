import math
from dataclasses import dataclass
from datetime import date, datetime, timedelta
from typing import Optional
from zoneinfo import ZoneInfo

from config import get_settings
from models import BucketPeriod

ONE_DAY = timedelta(days=1)


@dataclass(frozen=True)
class Period:
    slug: str
    start: date
    end: date


@dataclass(frozen=True)
class PeriodWindow:
    start: datetime
    end: datetime

    def contains(self, value: date) -> bool:
        return self.start.date() <= value <= self.end.date()


@dataclass(frozen=True)
class TimeElapsed:
    total_days: int
    days_elapsed: int
    percentage: float


def local_now() -> datetime:
    """Current wall-clock time in the configured timezone, as a naive datetime."""
    tz = ZoneInfo(get_settings().timezone)
    return datetime.now(tz).replace(tzinfo=None)


def _month_end(day: date) -> date:
    first = day.replace(day=1)
    if first.month == 12:
        next_month = first.replace(year=first.year + 1, month=1)
    else:
        next_month = first.replace(month=first.month + 1)
    return next_month - date.resolution


def period_window(kind: BucketPeriod, now: datetime) -> PeriodWindow:
    """Active period for ``kind`` containing ``now``.

    Both bounds sit at local midnight; ``end`` is the *last day* of the period,
    not the first day of the next one.
    """
    today = now.date()
    if kind == BucketPeriod.monthly:
        start_day = today.replace(day=1)
        end_day = _month_end(today)
    elif kind == BucketPeriod.yearly:
        start_day = date(today.year, 1, 1)
        end_day = date(today.year, 12, 31)
    else:
        raise ValueError(f"Unsupported period: {kind}")
    return PeriodWindow(
        start=datetime.combine(start_day, datetime.min.time()),
        end=datetime.combine(end_day, datetime.min.time()),
    )


def time_elapsed(window: PeriodWindow, now: datetime) -> TimeElapsed:
    total_days = math.ceil((window.end - window.start) / ONE_DAY)
    days_elapsed = math.ceil((now - window.start) / ONE_DAY)
    percentage = days_elapsed / total_days * 100
    return TimeElapsed(
        total_days=total_days, days_elapsed=days_elapsed, percentage=percentage
    )


def resolve_period(
    period: Optional[str],
    start: Optional[str],
    end: Optional[str],
    *,
    today: Optional[date] = None,
) -> Period:
    today = today or date.today()
    if not period or period == "all":
        return Period("all", date(1970, 1, 1), date(9999, 12, 31))
    if period == "this_month":
        first = today.replace(day=1)
        return Period("this_month", first, _month_end(today))
    if period == "last_month":
        first_this = today.replace(day=1)
        last_month_end = first_this - date.resolution
        last_month_start = last_month_end.replace(day=1)
        return Period("last_month", last_month_start, last_month_end)
    if period == "this_year":
        return Period("this_year", date(today.year, 1, 1), date(today.year, 12, 31))
    if period == "custom":
        if not start or not end:
            raise ValueError("Custom period requires start and end dates")
        start_date = date.fromisoformat(start)
        end_date = date.fromisoformat(end)
        if start_date > end_date:
            raise ValueError("Start date must be before end date")
        return Period("custom", start_date, end_date)
    raise ValueError(f"Unknown period: {period}")
