from __future__ import annotations

import calendar
from datetime import date, datetime, timedelta

from booked.models import date_to_datetime


DEFAULT_MONTH_THRESHOLD_DAYS = 21


def _days_in_month(year: int, month: int) -> int:
    return calendar.monthrange(year, month)[1]


def compute_window_days(now: datetime | date, threshold_days: int = DEFAULT_MONTH_THRESHOLD_DAYS) -> int:
    """Number of days ahead to mirror, counted from ``now``.

    The window runs to the end of the current month, today included. Late in the
    month, when fewer than ``threshold_days`` remain, the whole following month
    is added so events just past month end do not drop in and out of the mirror.
    """
    today = now.date() if isinstance(now, datetime) else now
    remaining = _days_in_month(today.year, today.month) - today.day + 1
    if remaining < threshold_days:
        if today.month == 12:
            remaining += _days_in_month(today.year + 1, 1)
        else:
            remaining += _days_in_month(today.year, today.month + 1)
    return max(1, remaining)


def planning_window(
    now: datetime, threshold_days: int = DEFAULT_MONTH_THRESHOLD_DAYS
) -> tuple[datetime, datetime]:
    start = date_to_datetime(now)
    return start, start + timedelta(days=compute_window_days(start, threshold_days))
