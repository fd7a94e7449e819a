from dataclasses import dataclass
from datetime import date, timedelta
from typing import Optional

DEFAULT_LOOKBACK_DAYS = 45
DEFAULT_LOOKAHEAD_DAYS = 120


@dataclass(frozen=True)
class Period:
    slug: str
    start: date
    end: date


def _month_bounds(year: int, month: int) -> tuple[date, date]:
    first = date(year, month, 1)
    if month == 12:
        next_month = date(year + 1, 1, 1)
    else:
        next_month = date(year, month + 1, 1)
    return first, next_month - date.resolution


def resolve_period(
    period: Optional[str],
    start: Optional[date],
    end: Optional[date],
    *,
    today: date,
) -> Period:
    """Turn list query parameters into a concrete due-date window.

    Explicit ``start``/``end`` win over a named period; with neither, the
    default window looks back far enough to surface overdue bills.
    """
    if period == "custom" or (period is None and (start or end)):
        if not start or not end:
            raise ValueError("Custom period requires start and end dates")
        if start > end:
            raise ValueError("Start date must be before end date")
        return Period("custom", start, end)
    if period == "last_month":
        first_this = today.replace(day=1)
        last_month_end = first_this - date.resolution
        return Period("last_month", last_month_end.replace(day=1), last_month_end)
    if period == "next_month":
        if today.month == 12:
            bounds = _month_bounds(today.year + 1, 1)
        else:
            bounds = _month_bounds(today.year, today.month + 1)
        return Period("next_month", *bounds)
    if period == "this_month":
        return Period("this_month", *_month_bounds(today.year, today.month))

    return Period(
        "default",
        today - timedelta(days=DEFAULT_LOOKBACK_DAYS),
        today + timedelta(days=DEFAULT_LOOKAHEAD_DAYS),
    )


def current_month(today: date) -> Period:
    return Period("this_month", *_month_bounds(today.year, today.month))
