import calendar
from datetime import date


def days_in_month(year: int, month: int) -> int:
    return calendar.monthrange(year, month)[1]


def month_bounds(reference: date) -> tuple[date, date]:
    """First and last calendar day of the month containing ``reference``."""
    last = days_in_month(reference.year, reference.month)
    return reference.replace(day=1), reference.replace(day=last)


def clamp_day(year: int, month: int, day: int | None) -> int:
    """Pull a nominal day-of-month into the valid range for the given month.

    Missing or non-positive days fall back to the 1st; days past the end of a
    short month land on its last day (31 -> 28/29 in February).
    """
    if not day or day < 1:
        return 1
    return min(day, days_in_month(year, month))


def due_date_for_month(recurring_day: int | None, reference: date) -> date:
    day = clamp_day(reference.year, reference.month, recurring_day)
    return date(reference.year, reference.month, day)
