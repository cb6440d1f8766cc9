"""
Billing cycle date arithmetic.
"""

import calendar
from datetime import date
from typing import Callable, Optional

Today = Callable[[], date]


def add_months(start: date, months: int = 1) -> date:
    """
    Shift a date by whole calendar months.

    The day is clamped to the target month's length (Jan 31 + 1 month = Feb 28/29).
    """
    month_index = start.month - 1 + months
    year = start.year + month_index // 12
    month = month_index % 12 + 1
    day = min(start.day, calendar.monthrange(year, month)[1])
    return date(year, month, day)


def next_cycle_end(cycle_start: date) -> date:
    """Credits refill monthly for both billing periods."""
    return add_months(cycle_start, 1)


def is_cycle_elapsed(cycle_end: Optional[date], today: date) -> bool:
    """An allocation without a cycle end has never been cycled and is due."""
    return cycle_end is None or cycle_end <= today
