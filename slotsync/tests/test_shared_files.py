"""Two runs (separate processes in production) working over the same DATA_DIR."""

from __future__ import annotations

import datetime as dt

from slotsync.calendars import InMemoryCalendar
from slotsync.domain import DecrementStatus, EventKind
from slotsync.quota import QuotaManager
from slotsync.registry import build_local_registry
from slotsync.runs import RunContext
from slotsync.state_file import JsonStateStore, MemoryStateStore
from slotsync.tests.helpers import NOW, TODAY, make_lock, make_settings, response_row

TUESDAY = dt.date(2026, 10, 20)


def _ctx(tmp_path, **overrides) -> RunContext:
    settings = make_settings(data_dir=str(tmp_path), **overrides)
    return RunContext.build(
        settings,
        registry=build_local_registry(settings),
        store=MemoryStateStore(),
        lock=make_lock(tmp_path),
        today=lambda: TODAY,
        now=lambda: NOW,
    )


def test_second_run_sees_the_first_runs_booking(tmp_path) -> None:
    first = _ctx(tmp_path, slot_cap=1)
    second = _ctx(tmp_path, slot_cap=1)

    first.availability.seed_availability_window(TODAY, 60)
    booked = first.availability.decrement_slot_all_categories(TUESDAY)
    late = second.availability.decrement_slot_all_categories(TUESDAY)

    assert booked.status is DecrementStatus.OK
    assert late.status is DecrementStatus.NO_SLOTS
    assert list(_ctx(tmp_path, slot_cap=1).availability.left_for(TUESDAY).values()) == [0, 0, 0]


def test_responses_and_events_written_by_another_run_are_seen(tmp_path) -> None:
    first = _ctx(tmp_path)
    second = _ctx(tmp_path)

    first.registry.get("clearance").responses.append_row(response_row("Santos", "Maria", TUESDAY))
    first_event = first.registry.calendar.create_all_day_event("[APPT] a", TUESDAY, kind=EventKind.APPOINTMENT)
    second.registry.get("clearance").responses.append_row(response_row("Reyes", "Jose", TUESDAY))
    second_event = second.registry.calendar.create_all_day_event("[APPT] b", TUESDAY, kind=EventKind.APPOINTMENT)

    assert [r["Last Name"] for r in first.registry.get("clearance").responses.read_rows()] == ["Santos", "Reyes"]
    assert [e.title for e in first.registry.calendar.list_events(TUESDAY, TUESDAY + dt.timedelta(days=1))] == [
        "[APPT] a",
        "[APPT] b",
    ]
    assert first_event.event_id != second_event.event_id


def test_daily_quota_is_shared_between_runs(tmp_path) -> None:
    path = str(tmp_path / "state.json")
    first = QuotaManager(InMemoryCalendar(), JsonStateStore(path), run_limit=10, daily_limit=3, today=lambda: TODAY)
    second = QuotaManager(InMemoryCalendar(), JsonStateStore(path), run_limit=10, daily_limit=3, today=lambda: TODAY)

    first.record_call(3)

    assert not second.can_call()
    second.record_call(1)
    assert JsonStateStore(path).get("calls_today") == 4


def test_state_written_by_another_run_is_not_clobbered(tmp_path) -> None:
    path = str(tmp_path / "state.json")
    first = JsonStateStore(path)
    second = JsonStateStore(path)

    first.set("last_sync_at", "2026-10-19T09:00:00")
    second.set("submission_counter", 4)

    assert JsonStateStore(path).get("last_sync_at") == "2026-10-19T09:00:00"
    assert second.get("last_sync_at") == "2026-10-19T09:00:00"
    assert first.get("submission_counter") == 4
