from __future__ import annotations

import datetime as dt
import logging
from dataclasses import dataclass
from typing import Iterable

from slotsync.availability import AvailabilityService
from slotsync.calendars import events_of_kind
from slotsync.dates import add_days, date_range
from slotsync.domain import (
    AppointmentRequest,
    CalendarEvent,
    EventColor,
    EventKind,
    appointment_title,
    holiday_title,
    summary_color,
    summary_title,
)
from slotsync.quota import QuotaManager
from slotsync.stores import parse_request

logger = logging.getLogger(__name__)

# How far back/forward the purges look for stray events.
PURGE_HORIZON_DAYS = 366


@dataclass
class SyncReport:
    created: int = 0
    updated: int = 0
    deleted: int = 0
    skipped: int = 0
    errors: int = 0

    @property
    def writes(self) -> int:
        return self.created + self.updated + self.deleted

    def __str__(self) -> str:
        return (
            f"created={self.created} updated={self.updated} deleted={self.deleted} "
            f"skipped={self.skipped} errors={self.errors}"
        )


def dedupe_requests(requests: Iterable[AppointmentRequest]) -> list[AppointmentRequest]:
    """One request per identity; the most recently submitted one wins."""
    latest: dict[tuple[str, str, str, str], AppointmentRequest] = {}
    for r in requests:
        current = latest.get(r.identity)
        if current is None or r.submitted_at >= current.submitted_at:
            latest[r.identity] = r
    return sorted(latest.values(), key=lambda r: (r.chosen_date, r.submitted_at))


def _by_date(events: Iterable[CalendarEvent], kind: EventKind) -> dict[dt.date, list[CalendarEvent]]:
    grouped: dict[dt.date, list[CalendarEvent]] = {}
    for e in events:
        if e.kind is kind:
            grouped.setdefault(e.date, []).append(e)
    return grouped


class CalendarSync:
    """Reconciles calendar events with the ledger and the response sheets.

    Every pass is a diff: events are only written when they differ from what
    the ledger and the responses say, so a second pass over unchanged data
    makes no calendar writes.
    """

    def __init__(self, quota: QuotaManager, availability: AvailabilityService) -> None:
        self.quota = quota
        self.availability = availability

    @property
    def calendar(self):
        return self.quota.calendar

    @property
    def business_days(self):
        return self.availability.business_days

    @property
    def slot_cap(self) -> int:
        return self.availability.slot_cap

    def _list(self, start: dt.date, end_inclusive: dt.date, search: str | None = None) -> list[CalendarEvent]:
        return self.calendar.list_events(start, add_days(end_inclusive, 1), search=search)

    def _delete(self, event: CalendarEvent, report: SyncReport, reason: str) -> None:
        if self.quota.safe_delete(event.event_id):
            logger.info("Deleted %s event %r on %s (%s)", event.kind.value, event.title, event.date, reason)
            report.deleted += 1
        else:
            report.skipped += 1

    def _create(
        self,
        title: str,
        date: dt.date,
        kind: EventKind,
        report: SyncReport,
        color: EventColor | None = None,
        description: str = "",
    ) -> CalendarEvent | None:
        event = self.quota.safe_create(title, date, kind=kind, color=color, description=description)
        if event is None:
            report.skipped += 1
            return None
        logger.info("Created %s event %r on %s", kind.value, title, date)
        report.created += 1
        return event

    def load_requests(self) -> list[AppointmentRequest]:
        requests: list[AppointmentRequest] = []
        for category in self.availability.registry:
            for row in category.responses.read_rows():
                request = parse_request(row, category.category_id)
                if request is not None:
                    requests.append(request)
        return dedupe_requests(requests)

    # Summaries

    def sync_summary(
        self,
        date: dt.date,
        *,
        events: list[CalendarEvent] | None = None,
        report: SyncReport | None = None,
    ) -> SyncReport:
        """Make the date carry exactly one correct summary (or none on invalid dates)."""

        report = report if report is not None else SyncReport()
        if events is None:
            events = self._list(date, date)
        summaries = [e for e in events_of_kind(events, EventKind.SUMMARY) if e.date == date]

        if not self.business_days.is_valid_business_date(date):
            for e in summaries:
                self._delete(e, report, "not a business date")
            return report

        left = self.availability.min_left(date)
        title = summary_title(left, self.slot_cap)
        color = summary_color(left)

        if not summaries:
            self._create(title, date, EventKind.SUMMARY, report, color=color)
            return report

        # Prefer a survivor that is already correct to save a write.
        survivor = next((e for e in summaries if e.title == title), summaries[0])
        for e in summaries:
            if e is not survivor:
                self._delete(e, report, "duplicate summary")

        changed = False
        if survivor.title != title:
            if self.quota.safe_update_title(survivor.event_id, title):
                survivor.title = title
                changed = True
            else:
                report.skipped += 1
        if survivor.color != color:
            if self.quota.safe_set_color(survivor.event_id, color):
                survivor.color = color
                changed = True
            else:
                report.skipped += 1
        if changed:
            logger.info("Updated summary on %s to %r", date, title)
            report.updated += 1
        return report

    # Appointments

    def _expected_titles(self, date: dt.date, requests: Iterable[AppointmentRequest]) -> dict[str, AppointmentRequest]:
        # Only bookable dates can hold a booking; weekends and holidays never get appointments.
        if not self.business_days.is_valid_business_date(date):
            return {}
        return {appointment_title(r): r for r in requests if r.chosen_date == date}

    def _exists(self, title: str, date: dt.date) -> bool:
        return any(e.title == title for e in self._list(date, date, search=title))

    def sync_appointments(
        self,
        date: dt.date,
        requests: Iterable[AppointmentRequest],
        *,
        events: list[CalendarEvent] | None = None,
        report: SyncReport | None = None,
    ) -> SyncReport:
        report = report if report is not None else SyncReport()
        if events is None:
            events = self._list(date, date)

        expected = self._expected_titles(date, requests)
        existing: dict[str, list[CalendarEvent]] = {}
        for e in events:
            if e.kind is EventKind.APPOINTMENT and e.date == date:
                existing.setdefault(e.title, []).append(e)

        for title, found in existing.items():
            if title not in expected:
                for e in found:
                    self._delete(e, report, "no matching request")
            else:
                for e in found[1:]:
                    self._delete(e, report, "duplicate appointment")
                self._refresh_description(found[0], expected[title], report)

        for title in sorted(set(expected) - set(existing)):
            if self._exists(title, date):
                # Created by a concurrent run since we listed.
                continue
            self._create(title, date, EventKind.APPOINTMENT, report, description=_describe(expected[title]))

        return report

    def _refresh_description(self, event: CalendarEvent, request: AppointmentRequest, report: SyncReport) -> None:
        description = _describe(request)
        if event.description == description:
            return
        if self.quota.safe_set_description(event.event_id, description):
            event.description = description
            report.updated += 1
        else:
            report.skipped += 1

    def ensure_appointment(self, request: AppointmentRequest) -> tuple[bool, CalendarEvent | None]:
        """Create the appointment event unless it exists.

        Returns (ok, event): ok is False only when the quota refused the write.
        """
        title = appointment_title(request)
        for e in self._list(request.chosen_date, request.chosen_date, search=title):
            if e.title == title:
                return True, e
        event = self.quota.safe_create(
            title,
            request.chosen_date,
            kind=EventKind.APPOINTMENT,
            description=_describe(request),
        )
        if event is None:
            return False, None
        logger.info("Created appointment %r on %s", title, request.chosen_date)
        return True, event

    # Full range

    def sync_range(
        self,
        start: dt.date,
        end: dt.date,
        *,
        requests: list[AppointmentRequest] | None = None,
    ) -> SyncReport:
        report = SyncReport()
        if requests is None:
            requests = self.load_requests()

        by_date: dict[dt.date, list[CalendarEvent]] = {}
        for e in self._list(start, end):
            by_date.setdefault(e.date, []).append(e)

        for d in date_range(start, end):
            self.availability.lock.touch()
            try:
                day_events = by_date.get(d, [])
                self.sync_summary(d, events=day_events, report=report)
                self.sync_appointments(d, requests, events=day_events, report=report)
            except Exception as e:
                report.errors += 1
                logger.error("Sync failed for %s (%s: %s)", d, type(e).__name__, e)

        logger.info("Synced %s..%s: %s", start, end, report)
        return report

    # Purges

    def purge_past_events(self, requests: list[AppointmentRequest] | None = None) -> SyncReport:
        """Drop past summaries and holiday markers, and past appointments whose response is gone.

        A past appointment stays while its response row is retained, so it
        ages out together with the response.
        """
        report = SyncReport()
        if requests is None:
            requests = self.load_requests()
        retained = {(r.chosen_date, appointment_title(r)) for r in requests}
        today = self.business_days.today()
        for e in self._list(add_days(today, -PURGE_HORIZON_DAYS), add_days(today, -1)):
            if e.kind in (EventKind.SUMMARY, EventKind.HOLIDAY):
                self._isolated_delete(e, report, "in the past")
            elif e.kind is EventKind.APPOINTMENT and (e.date, e.title) not in retained:
                self._isolated_delete(e, report, "past appointment without a response")
        return report

    def purge_summaries_beyond_window(self) -> SyncReport:
        report = SyncReport()
        start = add_days(self.business_days.window_end(), 1)
        for e in self._list(start, add_days(start, PURGE_HORIZON_DAYS)):
            if e.kind is EventKind.SUMMARY:
                self._isolated_delete(e, report, "beyond booking window")
        return report

    def purge_invalid_summaries(self, start: dt.date, end: dt.date) -> SyncReport:
        report = SyncReport()
        for e in self._list(start, end):
            if e.kind is EventKind.SUMMARY and not self.business_days.is_valid_business_date(e.date):
                self._isolated_delete(e, report, "not a business date")
        return report

    def purge_holiday_events(self, start: dt.date, end: dt.date) -> SyncReport:
        report = SyncReport()
        holidays = self.business_days.holidays
        for e in self._list(start, end):
            if e.kind in (EventKind.SUMMARY, EventKind.APPOINTMENT) and holidays.is_holiday(e.date):
                self._isolated_delete(e, report, "holiday")
        return report

    def purge_orphan_appointments(
        self,
        start: dt.date,
        end: dt.date,
        requests: list[AppointmentRequest] | None = None,
    ) -> SyncReport:
        report = SyncReport()
        if requests is None:
            requests = self.load_requests()
        expected = {
            (r.chosen_date, appointment_title(r))
            for r in requests
            if self.business_days.is_valid_business_date(r.chosen_date)
        }
        for e in self._list(start, end):
            if e.kind is EventKind.APPOINTMENT and (e.date, e.title) not in expected:
                self._isolated_delete(e, report, "orphaned appointment")
        return report

    def upsert_holiday_markers(self, start: dt.date, end: dt.date, holidays: dict[dt.date, str]) -> SyncReport:
        """Exactly one marker per holiday in range, none elsewhere."""
        report = SyncReport()
        markers = _by_date(self._list(start, end), EventKind.HOLIDAY)

        for d in sorted(set(markers) | set(holidays)):
            try:
                found = markers.get(d, [])
                name = holidays.get(d)
                if name is None:
                    for e in found:
                        self._delete(e, report, "no longer a holiday")
                    continue
                title = holiday_title(name)
                keep = next((e for e in found if e.title == title), None)
                for e in found:
                    if e is not keep:
                        self._delete(e, report, "stale holiday marker")
                if keep is None:
                    self._create(title, d, EventKind.HOLIDAY, report, color=EventColor.GRAY)
            except Exception as e:
                report.errors += 1
                logger.error("Holiday marker sync failed for %s (%s: %s)", d, type(e).__name__, e)
        return report

    def validate_summaries(self, start: dt.date, end: dt.date) -> int:
        """Fix dates without exactly one summary (valid) or with any (invalid). Returns dates fixed."""
        summaries = _by_date(self._list(start, end), EventKind.SUMMARY)
        drifted = 0
        for d in date_range(start, end):
            count = len(summaries.get(d, []))
            expected = 1 if self.business_days.is_valid_business_date(d) else 0
            if count == expected:
                continue
            drifted += 1
            logger.warning("Summary drift on %s: %d events, expected %d", d, count, expected)
            try:
                self.sync_summary(d, events=summaries.get(d, []))
            except Exception as e:
                logger.error("Could not repair summary on %s (%s: %s)", d, type(e).__name__, e)
        return drifted

    def _isolated_delete(self, event: CalendarEvent, report: SyncReport, reason: str) -> None:
        try:
            self._delete(event, report, reason)
        except Exception as e:
            report.errors += 1
            logger.error("Failed to delete %r on %s (%s: %s)", event.title, event.date, type(e).__name__, e)


def _describe(request: AppointmentRequest) -> str:
    return (
        f"Category: {request.category}\n"
        f"Name: {request.first_name} {request.last_name}\n"
        f"Purok: {request.purok}\n"
        f"Barangay: {request.barangay}\n"
        f"Submitted: {request.submitted_at.isoformat(sep=' ', timespec='seconds')}"
    )
