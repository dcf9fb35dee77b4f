from __future__ import annotations

import datetime as dt
import json

import pytest

from slotsync.calendars import InMemoryCalendar, JsonFileCalendar
from slotsync.choices import choice_label, refresh_choices
from slotsync.domain import EventColor, EventKind, kind_from_title
from slotsync.registry import Category, Registry, build_local_registry
from slotsync.state_file import JsonStateStore
from slotsync.stores import InMemoryChoices, InMemoryLedger, InMemoryResponses, JsonLedger, parse_request
from slotsync.tests.helpers import TODAY, make_ctx, make_settings, response_row

TUESDAY = dt.date(2026, 10, 20)


def test_json_calendar_survives_reload_and_classifies_untagged_events(tmp_path) -> None:
    path = tmp_path / "calendar.json"
    calendar = JsonFileCalendar(str(path))
    event = calendar.create_all_day_event("[SLOTS] 5/20 slots left", TUESDAY, kind=EventKind.SUMMARY, color=EventColor.GREEN)
    calendar.set_color(event.event_id, EventColor.RED)

    raw = json.loads(path.read_text(encoding="utf-8"))
    raw["events"].append({"id": "manual-1", "title": "[HOLIDAY] Town Fiesta", "date": "2026-10-22"})
    raw["events"].append({"id": "broken", "title": "x", "date": "someday"})
    path.write_text(json.dumps(raw), encoding="utf-8")

    reloaded = JsonFileCalendar(str(path))
    events = reloaded.list_events(TODAY, TODAY + dt.timedelta(days=7))
    assert [(e.title, e.kind, e.color) for e in events] == [
        ("[SLOTS] 5/20 slots left", EventKind.SUMMARY, EventColor.RED),
        ("[HOLIDAY] Town Fiesta", EventKind.HOLIDAY, None),
    ]
    # New ids never collide with loaded ones.
    new = reloaded.create_all_day_event("x", TUESDAY, kind=EventKind.OTHER)
    assert new.event_id not in {e.event_id for e in events}


def test_calendar_listing_is_half_open_and_filters_by_title() -> None:
    calendar = InMemoryCalendar()
    calendar.create_all_day_event("[APPT] a", TODAY, kind=EventKind.APPOINTMENT)
    calendar.create_all_day_event("[APPT] b", TUESDAY, kind=EventKind.APPOINTMENT)

    assert [e.title for e in calendar.list_events(TODAY, TUESDAY)] == ["[APPT] a"]
    assert [e.title for e in calendar.list_events(TODAY, TUESDAY + dt.timedelta(days=1), search="b")] == ["[APPT] b"]
    with pytest.raises(KeyError):
        calendar.delete_event("missing")


def test_kind_from_title() -> None:
    assert kind_from_title("[APPT] clearance: A, B (C, D)") is EventKind.APPOINTMENT
    assert kind_from_title("  [SLOTS] FULL") is EventKind.SUMMARY
    assert kind_from_title("Team lunch") is EventKind.OTHER


def test_json_ledger_persists_every_write(tmp_path) -> None:
    path = str(tmp_path / "ledger" / "clearance.json")
    ledger = JsonLedger(path)
    ledger.append_row({"date": "2026-10-21", "booked": 0, "left": 20})
    ledger.append_row({"date": "2026-10-20", "booked": 0, "left": 20})
    ledger.update_row(0, booked=1, left=19)
    ledger.sort_by_date()

    assert [r["date"] for r in JsonLedger(path).read_rows()] == ["2026-10-20", "2026-10-21"]
    assert JsonLedger(path).read_rows()[1]["left"] == 19


def test_json_state_store_recovers_from_corruption(tmp_path) -> None:
    path = tmp_path / "state.json"
    path.write_text("{not json", encoding="utf-8")

    store = JsonStateStore(str(path))
    assert store.get("calls_today") is None
    store.update({"calls_today": 3})
    assert JsonStateStore(str(path)).get("calls_today") == 3


def test_parse_request_skips_malformed_rows() -> None:
    good = parse_request(response_row("Santos", "Maria", TUESDAY), "clearance")
    assert good is not None
    assert good.chosen_date == TUESDAY

    no_date = response_row("Santos", "Maria", TUESDAY)
    no_date["Preferred Date"] = "whenever"
    assert parse_request(no_date, "clearance") is None

    bad_timestamp = response_row("Santos", "Maria", TUESDAY)
    bad_timestamp["Timestamp"] = "yesterday"
    assert parse_request(bad_timestamp, "clearance") is None

    assert parse_request({"Timestamp": "2026-10-19 09:00:00"}, "clearance") is None


def test_registry_rejects_duplicate_and_blank_ids() -> None:
    def _category(category_id: str) -> Category:
        return Category(category_id, InMemoryResponses(), InMemoryLedger(), InMemoryChoices(), InMemoryCalendar())

    with pytest.raises(ValueError, match="Duplicate"):
        Registry([_category("a"), _category("a")])
    with pytest.raises(ValueError, match="non-empty"):
        Registry([_category(" ")])
    with pytest.raises(ValueError):
        Registry([])


def test_local_registry_shares_one_calendar(tmp_path) -> None:
    registry = build_local_registry(make_settings(data_dir=str(tmp_path)))

    assert registry.ids == ("clearance", "indigency", "residency")
    assert len({id(c.calendar) for c in registry}) == 1
    with pytest.raises(KeyError):
        registry.get("unknown")


def test_choice_label_embeds_iso_date() -> None:
    assert choice_label(TUESDAY, 12) == "Tuesday, October 20, 2026 (2026-10-20) - 12 slots left"
    assert choice_label(TUESDAY, 1).endswith("- 1 slot left")


def test_refresh_choices_hides_full_dates(tmp_path) -> None:
    ctx = make_ctx(tmp_path)
    ctx.availability.seed_availability_window(TODAY, 5)
    for _ in range(20):
        ctx.availability.decrement_slot_all_categories(TUESDAY)

    assert refresh_choices(ctx.availability) == 0

    labels = ctx.registry.get("residency").choices.labels
    assert len(labels) == 4
    assert all("2026-10-20" not in label for label in labels)
