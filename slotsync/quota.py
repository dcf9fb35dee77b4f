from __future__ import annotations

import datetime as dt
import logging
from typing import Callable

from slotsync.calendars import Calendar
from slotsync.domain import CalendarEvent, EventColor, EventKind
from slotsync.state_file import StateStore

logger = logging.getLogger(__name__)

CALLS_TODAY_KEY = "calls_today"
QUOTA_DAY_KEY = "quota_day"


class QuotaManager:
    """Gates calendar mutations against a per-run and a per-day call ceiling.

    `calls_this_run` lives only as long as this object (one per run);
    `calls_today` is written to the state store after every call so a crash
    between calls does not lose the count. Exhaustion is a soft failure:
    the safe_* methods return None/False and the caller keeps going.
    """

    def __init__(
        self,
        calendar: Calendar,
        store: StateStore,
        *,
        run_limit: int,
        daily_limit: int,
        today: Callable[[], dt.date] = dt.date.today,
    ) -> None:
        self.calendar = calendar
        self.store = store
        self.run_limit = run_limit
        self.daily_limit = daily_limit
        self._today = today
        self.calls_this_run = 0
        self.denied = 0

    @property
    def calls_today(self) -> int:
        # A counter stamped with an older day means the midnight reset was missed.
        if self.store.get(QUOTA_DAY_KEY) != self._today().isoformat():
            return 0
        return int(self.store.get(CALLS_TODAY_KEY, 0))

    def can_call(self, n: int = 1) -> bool:
        return self.calls_this_run + n <= self.run_limit and self.calls_today + n <= self.daily_limit

    def record_call(self, n: int = 1) -> None:
        calls_today = self.calls_today + n
        self.calls_this_run += n
        self.store.update({QUOTA_DAY_KEY: self._today().isoformat(), CALLS_TODAY_KEY: calls_today})

    def reset_daily(self) -> None:
        self.store.update({QUOTA_DAY_KEY: self._today().isoformat(), CALLS_TODAY_KEY: 0})
        logger.info("Daily calendar call counter reset")

    def _deny(self, action: str) -> None:
        if not self.denied:
            logger.warning(
                "Calendar quota exhausted (run %d/%d, today %d/%d); skipping %s and further writes",
                self.calls_this_run,
                self.run_limit,
                self.calls_today,
                self.daily_limit,
                action,
            )
        self.denied += 1

    @property
    def exhausted(self) -> bool:
        return not self.can_call(1)

    def safe_create(
        self,
        title: str,
        date: dt.date,
        *,
        kind: EventKind,
        color: EventColor | None = None,
        description: str = "",
    ) -> CalendarEvent | None:
        if not self.can_call(1):
            self._deny(f"create {title!r}")
            return None
        event = self.calendar.create_all_day_event(title, date, kind=kind, color=color, description=description)
        self.record_call()
        return event

    def safe_delete(self, event_id: str) -> bool:
        if not self.can_call(1):
            self._deny(f"delete {event_id}")
            return False
        self.calendar.delete_event(event_id)
        self.record_call()
        return True

    def safe_update_title(self, event_id: str, title: str) -> bool:
        if not self.can_call(1):
            self._deny(f"retitle {event_id}")
            return False
        self.calendar.set_title(event_id, title)
        self.record_call()
        return True

    def safe_set_color(self, event_id: str, color: EventColor) -> bool:
        if not self.can_call(1):
            self._deny(f"recolor {event_id}")
            return False
        self.calendar.set_color(event_id, color)
        self.record_call()
        return True

    def safe_set_description(self, event_id: str, description: str) -> bool:
        if not self.can_call(1):
            self._deny(f"describe {event_id}")
            return False
        self.calendar.set_description(event_id, description)
        self.record_call()
        return True
