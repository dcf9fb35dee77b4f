from __future__ import annotations

import datetime as dt
import re
from typing import Callable, Iterator, Protocol
from zoneinfo import ZoneInfo

_ISO_DATE = re.compile(r"(\d{4})-(\d{2})-(\d{2})")


class HolidayLookup(Protocol):
    def is_holiday(self, date: dt.date) -> bool: ...


def format_date(date: dt.date) -> str:
    return date.isoformat()


def parse_date(value: str) -> dt.date:
    return dt.date.fromisoformat(value.strip()[:10])


def extract_date(label: str) -> dt.date | None:
    """Find the YYYY-MM-DD part of a choice label like 'Monday ... (2026-10-19) - 5 slots left'."""
    m = _ISO_DATE.search(label or "")
    if not m:
        return None
    try:
        return dt.date(int(m.group(1)), int(m.group(2)), int(m.group(3)))
    except ValueError:
        return None


def add_days(date: dt.date, days: int) -> dt.date:
    return date + dt.timedelta(days=days)


def is_weekend(date: dt.date) -> bool:
    return date.weekday() >= 5


def date_range(start: dt.date, end: dt.date) -> Iterator[dt.date]:
    """Dates in [start, end], inclusive."""
    current = start
    while current <= end:
        yield current
        current += dt.timedelta(days=1)


def today_in(timezone: str) -> Callable[[], dt.date]:
    zone = ZoneInfo(timezone)
    return lambda: dt.datetime.now(zone).date()


def now_in(timezone: str) -> Callable[[], dt.datetime]:
    zone = ZoneInfo(timezone)
    # Naive local time: everything is stored in the single configured zone.
    return lambda: dt.datetime.now(zone).replace(tzinfo=None, microsecond=0)


class BusinessDays:
    def __init__(self, holidays: HolidayLookup, *, future_days: int, today: Callable[[], dt.date]) -> None:
        self.holidays = holidays
        self.future_days = future_days
        self._today = today

    def today(self) -> dt.date:
        return self._today()

    def window_end(self) -> dt.date:
        return add_days(self.today(), self.future_days)

    def is_before_today(self, date: dt.date) -> bool:
        return date < self.today()

    def is_beyond_future_window(self, date: dt.date) -> bool:
        return date > self.window_end()

    def is_valid_business_date(self, date: dt.date) -> bool:
        # Cheap checks first: the holiday lookup may hit the network.
        return (
            not self.is_before_today(date)
            and not is_weekend(date)
            and not self.is_beyond_future_window(date)
            and not self.holidays.is_holiday(date)
        )

    def valid_dates(self, start: dt.date, end: dt.date) -> list[dt.date]:
        return [d for d in date_range(start, end) if self.is_valid_business_date(d)]
