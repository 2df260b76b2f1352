from __future__ import annotations

import calendar
from datetime import date, datetime, time, timedelta, timezone
from typing import Optional, Tuple

from src.core.errors import BadRequestError


def ensure_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def start_of_day(value: date) -> datetime:
    return datetime.combine(value, time.min, tzinfo=timezone.utc)


def add_months(value: datetime, months: int) -> datetime:
    month_index = value.month - 1 + months
    year = value.year + month_index // 12
    month = month_index % 12 + 1
    day = min(value.day, calendar.monthrange(year, month)[1])
    return value.replace(year=year, month=month, day=day)


def is_month_boundary(value: datetime) -> bool:
    return value.day == 1 and value.timetz().replace(tzinfo=None) == time.min


def month_window(year: int, month: int) -> Tuple[datetime, datetime]:
    start = start_of_day(date(year, month, 1))
    return start, add_months(start, 1)


def week_window(anchor: date) -> Tuple[datetime, datetime]:
    monday = anchor - timedelta(days=anchor.weekday())
    start = start_of_day(monday)
    return start, start + timedelta(days=7)


def resolve_period_window(
    period_type: str,
    year: Optional[int] = None,
    month: Optional[int] = None,
    start: Optional[datetime] = None,
    end: Optional[datetime] = None,
    today: Optional[date] = None,
) -> Tuple[datetime, datetime]:
    current = today or datetime.now(timezone.utc).date()
    if period_type == "monthly":
        if start is not None:
            anchor = ensure_utc(start)
            return month_window(anchor.year, anchor.month)
        return month_window(year or current.year, month or current.month)
    if period_type == "weekly":
        anchor_date = ensure_utc(start).date() if start is not None else current
        return week_window(anchor_date)
    if period_type == "custom":
        if start is None or end is None:
            raise BadRequestError("Custom periods require both start and end")
        window_start, window_end = ensure_utc(start), ensure_utc(end)
        if window_start >= window_end:
            raise BadRequestError("Period start must be before period end")
        return window_start, window_end
    raise BadRequestError("Unsupported period type")
