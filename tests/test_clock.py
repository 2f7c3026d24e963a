from datetime import date, datetime, timedelta

import pytest

from circulation.clock import add_days, add_months, days_between, start_of_day, to_date, to_datetime


def test_days_between_whole_days():
    start = datetime(2024, 1, 1, 10, 0)
    assert days_between(start, start + timedelta(days=5)) == 5


def test_days_between_rounds_partial_day_up():
    start = datetime(2024, 1, 1, 10, 0)
    assert days_between(start, start + timedelta(days=2, seconds=1)) == 3
    assert days_between(start, start + timedelta(minutes=1)) == 1


def test_days_between_same_instant_is_zero():
    start = datetime(2024, 1, 1)
    assert days_between(start, start) == 0


def test_days_between_rejects_dates():
    with pytest.raises(TypeError):
        days_between(date(2024, 1, 1), datetime(2024, 1, 2))


def test_add_days_crosses_month():
    assert add_days(date(2024, 1, 30), 3) == date(2024, 2, 2)


def test_add_days_rejects_non_integer():
    with pytest.raises(TypeError):
        add_days(date(2024, 1, 1), 1.5)
    with pytest.raises(TypeError):
        add_days(date(2024, 1, 1), True)


def test_add_months_simple():
    assert add_months(date(2024, 1, 15), 3) == date(2024, 4, 15)


def test_add_months_crosses_year():
    assert add_months(date(2024, 11, 10), 3) == date(2025, 2, 10)


def test_add_months_rolls_missing_day_forward():
    # Feb 2023 has 28 days, so the extra 3 days land in March
    assert add_months(date(2023, 1, 31), 1) == date(2023, 3, 3)
    # leap year
    assert add_months(date(2024, 1, 31), 1) == date(2024, 3, 2)


def test_add_months_keeps_datetime_time():
    assert add_months(datetime(2024, 1, 10, 8, 30), 1) == datetime(2024, 2, 10, 8, 30)


def test_start_of_day():
    assert start_of_day(datetime(2024, 5, 6, 23, 59, 59)) == datetime(2024, 5, 6)


def test_to_date_and_to_datetime_parse_iso_text():
    assert to_date("2024-05-06") == date(2024, 5, 6)
    assert to_date("2024-05-06T10:00:00.000000") == date(2024, 5, 6)
    assert to_datetime("2024-05-06T10:00:00.000000") == datetime(2024, 5, 6, 10)
    assert to_datetime(date(2024, 5, 6)) == datetime(2024, 5, 6)


def test_to_date_rejects_garbage():
    with pytest.raises(TypeError):
        to_date(42)
