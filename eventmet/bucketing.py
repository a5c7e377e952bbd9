"""Map timestamps to canonical UTC time buckets."""

from datetime import date, datetime, time, timedelta, timezone
from typing import List, Union

from .models import Granularity, ensure_utc


def bucket_for(timestamp: datetime, granularity: Union[Granularity, str]) -> datetime:
    """Truncate ``timestamp`` to the start of its hour, day, ISO week or month in UTC."""
    granularity = Granularity.parse(granularity)
    ts = ensure_utc(timestamp)

    if granularity is Granularity.HOUR:
        return ts.replace(minute=0, second=0, microsecond=0)
    day_start = ts.replace(hour=0, minute=0, second=0, microsecond=0)
    if granularity is Granularity.DAY:
        return day_start
    if granularity is Granularity.WEEK:
        # ISO weeks start on Monday (weekday() == 0).
        return day_start - timedelta(days=day_start.weekday())
    if granularity is Granularity.MONTH:
        return day_start.replace(day=1)
    raise ValueError(f"unsupported granularity: {granularity!r}")


def next_bucket(period_start: datetime, granularity: Union[Granularity, str]) -> datetime:
    """Return the start of the bucket following ``period_start``."""
    granularity = Granularity.parse(granularity)
    start = bucket_for(period_start, granularity)

    if granularity is Granularity.HOUR:
        return start + timedelta(hours=1)
    if granularity is Granularity.DAY:
        return start + timedelta(days=1)
    if granularity is Granularity.WEEK:
        return start + timedelta(weeks=1)
    if start.month == 12:
        return start.replace(year=start.year + 1, month=1)
    return start.replace(month=start.month + 1)


def range_to_buckets(
    start: datetime,
    end: datetime,
    granularity: Union[Granularity, str],
) -> List[datetime]:
    """
    List every bucket start whose window intersects ``[start, end]``.

    The result is ascending and contiguous, and regenerating it from the same
    inputs always yields the same list.
    """
    start = ensure_utc(start)
    end = ensure_utc(end)
    if start > end:
        raise ValueError("start must not be after end")

    buckets = []
    current = bucket_for(start, granularity)
    while current <= end:
        buckets.append(current)
        current = next_bucket(current, granularity)
    return buckets


def parse_instant(value: Union[str, datetime, date], end_of_day: bool = False) -> datetime:
    """
    Parse an ISO-8601 date or datetime into an aware UTC datetime.

    A bare date maps to midnight, or to the last microsecond of that day when
    ``end_of_day`` is set, so that an inclusive ``endDate`` covers the whole day.
    """
    if isinstance(value, datetime):
        return ensure_utc(value)
    if isinstance(value, date):
        day = value
    else:
        text = value.strip()
        if len(text) == 10:
            day = date.fromisoformat(text)
        else:
            if text.endswith("Z"):
                text = text[:-1] + "+00:00"
            return ensure_utc(datetime.fromisoformat(text))

    moment = time.max if end_of_day else time.min
    return datetime.combine(day, moment, tzinfo=timezone.utc)
