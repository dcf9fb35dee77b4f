from __future__ import annotations

import datetime as dt
from pathlib import Path

from slotsync.calendars import InMemoryCalendar
from slotsync.config import Settings
from slotsync.lock import RunLock
from slotsync.registry import Category, Registry
from slotsync.runs import RunContext
from slotsync.state_file import MemoryStateStore
from slotsync.stores import InMemoryChoices, InMemoryLedger, InMemoryResponses

# A Monday. Holidays in the default 60-day window: Nov 1 (Sun), Nov 30 (Mon), Dec 8 (Tue).
TODAY = dt.date(2026, 10, 19)
NOW = dt.datetime(2026, 10, 19, 9, 0, 0)

CATEGORIES = ("clearance", "indigency", "residency")


def make_settings(**overrides) -> Settings:
    # Minimal Settings for tests: no real tokens, no network.
    values = dict(
        categories=CATEGORIES,
        data_dir="unused",
        state_file=":memory:",
        slot_cap=20,
        future_days=60,
        run_call_limit=10_000,
        daily_call_limit=10_000,
        lock_timeout_seconds=0.2,
        calendar_retry_attempts=1,
        telegram_bot_token=None,
        telegram_chat_ids=(),
    )
    values.update(overrides)
    return Settings(**values)


def make_registry(ids: tuple[str, ...] = CATEGORIES, calendar: InMemoryCalendar | None = None) -> Registry:
    calendar = calendar or InMemoryCalendar()
    return Registry(
        [
            Category(
                category_id=c,
                responses=InMemoryResponses(),
                ledger=InMemoryLedger(),
                choices=InMemoryChoices(),
                calendar=calendar,
            )
            for c in ids
        ]
    )


def make_lock(tmp_path: Path, name: str = "ledger.lock") -> RunLock:
    return RunLock(str(tmp_path / name), timeout=0.2, poll_interval=0.05)


def make_ctx(tmp_path: Path, *, holiday_source=None, store=None, **overrides) -> RunContext:
    settings = make_settings(**overrides)
    return RunContext.build(
        settings,
        registry=make_registry(settings.categories),
        store=store if store is not None else MemoryStateStore(),
        lock=make_lock(tmp_path),
        holiday_source=holiday_source,
        today=lambda: TODAY,
        now=lambda: NOW,
    )


def response_row(
    last: str,
    first: str,
    date: dt.date,
    *,
    submitted: dt.datetime = NOW,
    purok: str = "Purok 3",
    barangay: str = "San Isidro",
) -> dict[str, str]:
    return {
        "Timestamp": submitted.strftime("%m/%d/%Y %H:%M:%S"),
        "Last Name": last,
        "First Name": first,
        "Purok": purok,
        "Barangay": barangay,
        "Preferred Date": f"{date:%A}, {date:%B} {date.day}, {date.year} ({date.isoformat()}) - 20 slots left",
    }


class FakeHolidaySource:
    def __init__(self, holidays: dict[dt.date, str] | None = None, *, error: Exception | None = None) -> None:
        self.holidays = holidays or {}
        self.error = error
        self.calls = 0

    def holidays_between(self, start: dt.date, end: dt.date) -> dict[dt.date, str]:
        self.calls += 1
        if self.error is not None:
            raise self.error
        return {d: n for d, n in self.holidays.items() if start <= d <= end}
