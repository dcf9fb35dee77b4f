from __future__ import annotations

import datetime as dt

import pytest

from slotsync.dates import BusinessDays, date_range, extract_date, is_weekend, parse_date
from slotsync.holidays import HolidayService
from slotsync.state_file import MemoryStateStore
from slotsync.tests.helpers import TODAY


def _business_days(future_days: int = 60) -> BusinessDays:
    holidays = HolidayService(MemoryStateStore(), None)
    return BusinessDays(holidays, future_days=future_days, today=lambda: TODAY)


def test_extract_date_from_choice_label() -> None:
    label = "Tuesday, October 20, 2026 (2026-10-20) - 12 slots left"
    assert extract_date(label) == dt.date(2026, 10, 20)


@pytest.mark.parametrize("label", ["", "next Tuesday", "2026-13-40 (bad)"])
def test_extract_date_returns_none_for_labels_without_a_date(label: str) -> None:
    assert extract_date(label) is None


def test_parse_date_ignores_time_part() -> None:
    assert parse_date("2026-10-20T00:00:00") == dt.date(2026, 10, 20)


def test_is_weekend() -> None:
    assert is_weekend(dt.date(2026, 10, 24))  # Saturday
    assert is_weekend(dt.date(2026, 10, 25))  # Sunday
    assert not is_weekend(dt.date(2026, 10, 26))


def test_date_range_is_inclusive() -> None:
    assert list(date_range(TODAY, TODAY + dt.timedelta(days=2))) == [
        TODAY,
        TODAY + dt.timedelta(days=1),
        TODAY + dt.timedelta(days=2),
    ]


@pytest.mark.parametrize(
    "date, expected",
    [
        (TODAY, True),
        (TODAY - dt.timedelta(days=1), False),  # past
        (dt.date(2026, 10, 24), False),  # Saturday
        (dt.date(2026, 11, 30), False),  # Bonifacio Day
        (dt.date(2026, 12, 18), True),  # last day of the window (Friday)
        (dt.date(2026, 12, 21), False),  # beyond the window
    ],
)
def test_is_valid_business_date(date: dt.date, expected: bool) -> None:
    assert _business_days().is_valid_business_date(date) is expected


def test_valid_dates_skip_weekends_and_holidays() -> None:
    days = _business_days().valid_dates(TODAY, TODAY + dt.timedelta(days=13))
    assert len(days) == 10
    assert all(d.weekday() < 5 for d in days)
