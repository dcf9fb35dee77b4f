from __future__ import annotations

import datetime as dt
import logging
from typing import Callable, Protocol

import httpx
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential

from slotsync.dates import date_range
from slotsync.state_file import StateStore

logger = logging.getLogger(__name__)

CACHE_KEY = "holiday_cache"

# Fixed-date national holidays, used whenever the remote calendar is unreachable.
FALLBACK_HOLIDAYS: dict[tuple[int, int], str] = {
    (1, 1): "New Year's Day",
    (4, 9): "Araw ng Kagitingan",
    (5, 1): "Labor Day",
    (6, 12): "Independence Day",
    (8, 21): "Ninoy Aquino Day",
    (11, 1): "All Saints' Day",
    (11, 30): "Bonifacio Day",
    (12, 8): "Feast of the Immaculate Conception",
    (12, 24): "Christmas Eve",
    (12, 25): "Christmas Day",
    (12, 30): "Rizal Day",
    (12, 31): "Last Day of the Year",
}


def fallback_name(date: dt.date) -> str | None:
    return FALLBACK_HOLIDAYS.get((date.month, date.day))


class HolidaySource(Protocol):
    def holidays_between(self, start: dt.date, end: dt.date) -> dict[dt.date, str]: ...


def _unfold(text: str) -> list[str]:
    lines: list[str] = []
    for raw in text.splitlines():
        if raw[:1] in (" ", "\t") and lines:
            lines[-1] += raw[1:]
        else:
            lines.append(raw.rstrip("\r"))
    return lines


def _ics_date(value: str) -> dt.date:
    value = value.strip()[:8]
    return dt.date(int(value[0:4]), int(value[4:6]), int(value[6:8]))


def parse_ics_holidays(text: str) -> dict[dt.date, str]:
    """Extract all-day events from an iCalendar feed.

    DTEND of an all-day event is exclusive; multi-day holidays expand to every
    covered date. Events that cannot be parsed are skipped.
    """

    result: dict[dt.date, str] = {}
    event: dict[str, str] | None = None

    for line in _unfold(text):
        if line == "BEGIN:VEVENT":
            event = {}
            continue
        if line == "END:VEVENT":
            if event is not None and "DTSTART" in event:
                try:
                    start = _ics_date(event["DTSTART"])
                    end = _ics_date(event["DTEND"]) - dt.timedelta(days=1) if "DTEND" in event else start
                except ValueError:
                    logger.warning("Skipping holiday event with bad date: %s", event.get("SUMMARY", "?"))
                else:
                    name = event.get("SUMMARY", "Holiday").strip() or "Holiday"
                    for d in date_range(start, max(start, end)):
                        result.setdefault(d, name)
            event = None
            continue
        if event is None or ":" not in line:
            continue

        key, value = line.split(":", 1)
        name = key.split(";", 1)[0].upper()
        if name in ("DTSTART", "DTEND", "SUMMARY"):
            event[name] = value

    return result


class IcsHolidaySource:
    """Public holiday calendar published as an .ics feed."""

    def __init__(self, url: str, *, timeout_seconds: float = 20.0) -> None:
        self.url = url
        self.timeout_seconds = timeout_seconds

    @retry(
        stop=stop_after_attempt(2),
        wait=wait_exponential(multiplier=1, min=1, max=4),
        retry=retry_if_exception_type(httpx.TransportError),
        reraise=True,
    )
    def _download(self) -> str:
        with httpx.Client(timeout=self.timeout_seconds, follow_redirects=True) as client:
            r = client.get(self.url)
            r.raise_for_status()
            return r.text

    def holidays_between(self, start: dt.date, end: dt.date) -> dict[dt.date, str]:
        all_holidays = parse_ics_holidays(self._download())
        return {d: name for d, name in all_holidays.items() if start <= d <= end}


class HolidayService:
    def __init__(
        self,
        store: StateStore,
        source: HolidaySource | None = None,
        *,
        ttl: dt.timedelta = dt.timedelta(hours=12),
        now: Callable[[], dt.datetime] = dt.datetime.now,
    ) -> None:
        self.store = store
        self.source = source
        self.ttl = ttl
        self._now = now
        self.remote_available = source is not None

    def _fresh_cache(self) -> dict | None:
        cache = self.store.get(CACHE_KEY)
        if not isinstance(cache, dict):
            return None
        try:
            fetched_at = dt.datetime.fromisoformat(cache["fetched_at"])
        except (KeyError, TypeError, ValueError):
            return None
        if self._now() - fetched_at > self.ttl:
            return None
        return cache

    def _cached_lookup(self, date: dt.date) -> str | None | bool:
        """Holiday name, None if covered and not a holiday, False if not covered."""
        cache = self._fresh_cache()
        if cache is None:
            return False
        iso = date.isoformat()
        for start, end in cache.get("ranges", []):
            if start <= iso <= end:
                return cache.get("dates", {}).get(iso)
        return False

    def holiday_name(self, date: dt.date) -> str | None:
        cached = self._cached_lookup(date)
        if cached is not False:
            return cached  # type: ignore[return-value]

        name = fallback_name(date)
        if name:
            return name

        if not self.remote_available:
            return None

        holidays = self.fetch_range(dt.date(date.year, 1, 1), dt.date(date.year, 12, 31))
        return holidays.get(date)

    def is_holiday(self, date: dt.date) -> bool:
        return self.holiday_name(date) is not None

    def fetch_range(self, start: dt.date, end: dt.date) -> dict[dt.date, str]:
        result: dict[dt.date, str] = {}
        remote_ok = False

        if self.remote_available and self.source is not None:
            try:
                result.update(self.source.holidays_between(start, end))
                remote_ok = True
            except (httpx.HTTPError, ValueError) as e:
                # Remote holidays are a convenience; the fallback table keeps us correct.
                self.remote_available = False
                logger.warning("Holiday calendar unavailable, using fallback table (%s: %s)", type(e).__name__, e)

        for d in date_range(start, end):
            name = fallback_name(d)
            if name:
                result.setdefault(d, name)

        if remote_ok:
            self._write_cache(start, end, result)

        return result

    def _write_cache(self, start: dt.date, end: dt.date, holidays: dict[dt.date, str]) -> None:
        cache = self._fresh_cache() or {"ranges": [], "dates": {}}
        dates = dict(cache.get("dates", {}))
        dates.update({d.isoformat(): name for d, name in holidays.items()})
        ranges = list(cache.get("ranges", [])) + [[start.isoformat(), end.isoformat()]]
        self.store.set(
            CACHE_KEY,
            {
                "fetched_at": cache.get("fetched_at") or self._now().isoformat(timespec="seconds"),
                "ranges": ranges,
                "dates": dates,
            },
        )
