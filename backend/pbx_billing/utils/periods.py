from __future__ import annotations

import calendar
import re
from datetime import datetime, timedelta

from pbx_billing.core.exceptions import ValidationError

_PERIOD_RE = re.compile(r"^(\d{4})-(0[1-9]|1[0-2])$")


def billing_period_key(moment: datetime) -> str:
    """Calendar-month bucket (YYYY-MM) a timestamp belongs to."""
    return f"{moment.year:04d}-{moment.month:02d}"


def parse_billing_period(key: str) -> tuple[datetime, datetime]:
    """Return the [start, end) bounds of a YYYY-MM key."""
    match = _PERIOD_RE.match(key or "")
    if not match:
        raise ValidationError(f"Invalid billing period '{key}', expected YYYY-MM")
    start = datetime(int(match.group(1)), int(match.group(2)), 1)
    return start, add_months(start, 1)


def end_of_day(moment: datetime) -> datetime:
    return moment.replace(hour=23, minute=59, second=59, microsecond=999999)


def add_months(moment: datetime, months: int) -> datetime:
    # Clamp to the last day of the target month (Jan 31 + 1 month -> Feb 28/29).
    month_index = moment.month - 1 + months
    year = moment.year + month_index // 12
    month = month_index % 12 + 1
    day = min(moment.day, calendar.monthrange(year, month)[1])
    return moment.replace(year=year, month=month, day=day)


def next_period_bounds(current_period_end: datetime, months: int = 1) -> tuple[datetime, datetime]:
    next_start = current_period_end + timedelta(days=1)
    return next_start, add_months(next_start, months)
