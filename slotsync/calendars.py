from __future__ import annotations

import datetime as dt
import itertools
import logging
from typing import Iterable, Protocol

from slotsync.domain import CalendarEvent, EventColor, EventKind, kind_from_title
from slotsync.state_file import file_stamp, load_json, save_json

logger = logging.getLogger(__name__)


class Calendar(Protocol):
    def list_events(self, start: dt.date, end: dt.date, search: str | None = None) -> list[CalendarEvent]:
        """All-day events with start <= date < end, optionally filtered by title substring."""
        ...

    def create_all_day_event(
        self,
        title: str,
        date: dt.date,
        *,
        kind: EventKind,
        color: EventColor | None = None,
        description: str = "",
    ) -> CalendarEvent: ...

    def delete_event(self, event_id: str) -> None: ...

    def set_title(self, event_id: str, title: str) -> None: ...

    def set_color(self, event_id: str, color: EventColor) -> None: ...

    def set_description(self, event_id: str, description: str) -> None: ...


def events_of_kind(events: Iterable[CalendarEvent], kind: EventKind) -> list[CalendarEvent]:
    return [e for e in events if e.kind is kind]


class InMemoryCalendar:
    def __init__(self, events: Iterable[CalendarEvent] = ()) -> None:
        self.events: dict[str, CalendarEvent] = {}
        self._ids = itertools.count(1)
        for e in events:
            self.events[e.event_id] = e

    def _next_id(self) -> str:
        while True:
            event_id = f"evt-{next(self._ids)}"
            if event_id not in self.events:
                return event_id

    def list_events(self, start: dt.date, end: dt.date, search: str | None = None) -> list[CalendarEvent]:
        found = [
            e
            for e in self.events.values()
            if start <= e.date < end and (search is None or search in e.title)
        ]
        return sorted(found, key=lambda e: (e.date, e.title, e.event_id))

    def create_all_day_event(
        self,
        title: str,
        date: dt.date,
        *,
        kind: EventKind,
        color: EventColor | None = None,
        description: str = "",
    ) -> CalendarEvent:
        event = CalendarEvent(
            event_id=self._next_id(),
            title=title,
            date=date,
            kind=kind,
            color=color,
            description=description,
        )
        self.events[event.event_id] = event
        self._changed()
        return event

    def _get(self, event_id: str) -> CalendarEvent:
        try:
            return self.events[event_id]
        except KeyError:
            raise KeyError(f"Unknown calendar event: {event_id}") from None

    def delete_event(self, event_id: str) -> None:
        self._get(event_id)
        del self.events[event_id]
        self._changed()

    def set_title(self, event_id: str, title: str) -> None:
        self._get(event_id).title = title
        self._changed()

    def set_color(self, event_id: str, color: EventColor) -> None:
        self._get(event_id).color = color
        self._changed()

    def set_description(self, event_id: str, description: str) -> None:
        self._get(event_id).description = description
        self._changed()

    def _changed(self) -> None:
        pass


class JsonFileCalendar(InMemoryCalendar):
    """Local calendar persisted to a JSON file after every mutation.

    Reloaded before reads and writes whenever another run has replaced the
    file since we last touched it.
    """

    def __init__(self, path: str) -> None:
        self.path = path
        self._stamp = file_stamp(path)
        super().__init__(self._load(path))

    def _refresh(self) -> None:
        stamp = file_stamp(self.path)
        if stamp != self._stamp:
            self._stamp = stamp
            self.events = {e.event_id: e for e in self._load(self.path)}

    def list_events(self, start: dt.date, end: dt.date, search: str | None = None) -> list[CalendarEvent]:
        self._refresh()
        return super().list_events(start, end, search)

    def create_all_day_event(
        self,
        title: str,
        date: dt.date,
        *,
        kind: EventKind,
        color: EventColor | None = None,
        description: str = "",
    ) -> CalendarEvent:
        self._refresh()
        return super().create_all_day_event(title, date, kind=kind, color=color, description=description)

    def _get(self, event_id: str) -> CalendarEvent:
        self._refresh()
        return super()._get(event_id)

    @staticmethod
    def _load(path: str) -> list[CalendarEvent]:
        events: list[CalendarEvent] = []
        for item in load_json(path).get("events", []):
            try:
                title = str(item["title"])
                kind_raw = item.get("kind")
                events.append(
                    CalendarEvent(
                        event_id=str(item["id"]),
                        title=title,
                        date=dt.date.fromisoformat(item["date"]),
                        kind=EventKind(kind_raw) if kind_raw else kind_from_title(title),
                        color=EventColor(item["color"]) if item.get("color") else None,
                        description=str(item.get("description", "")),
                    )
                )
            except (KeyError, TypeError, ValueError):
                logger.warning("Skipping malformed calendar event in %s: %r", path, item)
        return events

    def _changed(self) -> None:
        save_json(
            self.path,
            {
                "events": [
                    {
                        "id": e.event_id,
                        "title": e.title,
                        "date": e.date.isoformat(),
                        "kind": e.kind.value,
                        "color": e.color.value if e.color else None,
                        "description": e.description,
                    }
                    for e in sorted(self.events.values(), key=lambda e: (e.date, e.event_id))
                ]
            },
        )
        self._stamp = file_stamp(self.path)
