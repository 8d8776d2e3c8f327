from datetime import date

from rebill.dates import clamp_day, days_in_month, due_date_for_month, month_bounds


def test_month_bounds_leap_february():
    assert month_bounds(date(2024, 2, 15)) == (date(2024, 2, 1), date(2024, 2, 29))


def test_month_bounds_common_february():
    assert month_bounds(date(2023, 2, 3)) == (date(2023, 2, 1), date(2023, 2, 28))


def test_month_bounds_december():
    assert month_bounds(date(2025, 12, 31)) == (date(2025, 12, 1), date(2025, 12, 31))


def test_days_in_month():
    assert days_in_month(2024, 4) == 30
    assert days_in_month(1900, 2) == 28
    assert days_in_month(2000, 2) == 29


def test_clamp_day_defaults_to_first():
    assert clamp_day(2024, 3, None) == 1
    assert clamp_day(2024, 3, 0) == 1
    assert clamp_day(2024, 3, -4) == 1


def test_clamp_day_short_month():
    assert clamp_day(2024, 4, 31) == 30
    assert clamp_day(2023, 2, 31) == 28


def test_due_date_day31_in_leap_february():
    assert due_date_for_month(31, date(2024, 2, 10)) == date(2024, 2, 29)


def test_due_date_unclamped():
    assert due_date_for_month(5, date(2024, 3, 10)) == date(2024, 3, 5)
