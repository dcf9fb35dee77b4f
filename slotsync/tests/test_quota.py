from __future__ import annotations

import datetime as dt
from unittest.mock import MagicMock

import pytest

from slotsync.calendars import InMemoryCalendar
from slotsync.domain import EventKind
from slotsync.quota import CALLS_TODAY_KEY, QUOTA_DAY_KEY, QuotaManager
from slotsync.state_file import MemoryStateStore
from slotsync.tests.helpers import TODAY


def _quota(*, run_limit: int = 5, daily_limit: int = 10, store=None, calendar=None, today=TODAY) -> QuotaManager:
    return QuotaManager(
        calendar if calendar is not None else InMemoryCalendar(),
        store if store is not None else MemoryStateStore(),
        run_limit=run_limit,
        daily_limit=daily_limit,
        today=lambda: today,
    )


def test_can_call_respects_run_and_daily_limits() -> None:
    quota = _quota(run_limit=3, daily_limit=10)
    assert quota.can_call(3)
    assert not quota.can_call(4)

    store = MemoryStateStore({QUOTA_DAY_KEY: TODAY.isoformat(), CALLS_TODAY_KEY: 9})
    quota = _quota(run_limit=3, daily_limit=10, store=store)
    assert quota.can_call(1)
    assert not quota.can_call(2)


def test_record_call_persists_daily_counter_immediately() -> None:
    store = MemoryStateStore()
    quota = _quota(store=store)

    quota.record_call()
    quota.record_call(2)

    assert quota.calls_this_run == 3
    assert store.get(CALLS_TODAY_KEY) == 3
    assert store.get(QUOTA_DAY_KEY) == TODAY.isoformat()

    # A new run starts its own run counter but shares the daily one.
    next_run = _quota(store=store)
    assert next_run.calls_this_run == 0
    assert next_run.calls_today == 3


def test_counter_from_previous_day_does_not_count() -> None:
    store = MemoryStateStore({QUOTA_DAY_KEY: (TODAY - dt.timedelta(days=1)).isoformat(), CALLS_TODAY_KEY: 10})
    quota = _quota(store=store, daily_limit=10)
    assert quota.calls_today == 0
    assert quota.can_call(1)


def test_reset_daily_is_idempotent() -> None:
    store = MemoryStateStore({QUOTA_DAY_KEY: TODAY.isoformat(), CALLS_TODAY_KEY: 7})
    quota = _quota(store=store)

    quota.reset_daily()
    quota.reset_daily()

    assert quota.calls_today == 0
    assert store.get(CALLS_TODAY_KEY) == 0


def test_safe_create_counts_successful_calls() -> None:
    calendar = InMemoryCalendar()
    quota = _quota(calendar=calendar)

    event = quota.safe_create("[SLOTS] 20/20 slots left", TODAY, kind=EventKind.SUMMARY)

    assert event is not None
    assert calendar.list_events(TODAY, TODAY + dt.timedelta(days=1)) == [event]
    assert quota.calls_this_run == 1


def test_exhausted_quota_is_a_soft_failure_without_calling_the_calendar() -> None:
    calendar = MagicMock()
    quota = _quota(run_limit=1, calendar=calendar)
    quota.record_call()

    assert quota.exhausted
    assert quota.safe_create("x", TODAY, kind=EventKind.OTHER) is None
    assert quota.safe_delete("evt-1") is False
    assert quota.safe_update_title("evt-1", "y") is False
    assert quota.safe_set_description("evt-1", "z") is False
    calendar.create_all_day_event.assert_not_called()
    calendar.delete_event.assert_not_called()
    calendar.set_title.assert_not_called()
    calendar.set_description.assert_not_called()
    assert quota.denied == 4


def test_failed_calendar_call_is_not_counted() -> None:
    calendar = MagicMock()
    calendar.delete_event.side_effect = RuntimeError("boom")
    quota = _quota(calendar=calendar)

    with pytest.raises(RuntimeError):
        quota.safe_delete("evt-1")

    assert quota.calls_this_run == 0
