from __future__ import annotations

import datetime as dt
import enum
from dataclasses import dataclass, field


@dataclass(frozen=True, order=True)
class LedgerRow:
    """Booked/left counts of one category for one date."""

    date: dt.date
    booked: int
    left: int


@dataclass(frozen=True)
class AppointmentRequest:
    last_name: str
    first_name: str
    purok: str
    barangay: str
    chosen_date: dt.date
    submitted_at: dt.datetime
    category: str

    @property
    def identity(self) -> tuple[str, str, str, str]:
        # Two submissions from the same person at the same place are one request.
        return tuple(  # type: ignore[return-value]
            " ".join(v.split()).lower() for v in (self.last_name, self.first_name, self.purok, self.barangay)
        )


class EventKind(str, enum.Enum):
    SUMMARY = "summary"
    APPOINTMENT = "appointment"
    HOLIDAY = "holiday"
    OTHER = "other"


class EventColor(str, enum.Enum):
    # Google Calendar colorId values
    GREEN = "10"
    RED = "11"
    GRAY = "8"


SUMMARY_TAG = "[SLOTS]"
APPOINTMENT_TAG = "[APPT]"
HOLIDAY_TAG = "[HOLIDAY]"

_TAGS = {
    SUMMARY_TAG: EventKind.SUMMARY,
    APPOINTMENT_TAG: EventKind.APPOINTMENT,
    HOLIDAY_TAG: EventKind.HOLIDAY,
}


def kind_from_title(title: str) -> EventKind:
    """Classify an event created without kind metadata (e.g. by hand)."""
    stripped = title.strip()
    for tag, kind in _TAGS.items():
        if stripped.startswith(tag):
            return kind
    return EventKind.OTHER


@dataclass
class CalendarEvent:
    event_id: str
    title: str
    date: dt.date
    kind: EventKind = EventKind.OTHER
    color: EventColor | None = None
    description: str = ""


def summary_title(left: int, cap: int) -> str:
    if left <= 0:
        return f"{SUMMARY_TAG} FULL - 0/{cap} slots left"
    return f"{SUMMARY_TAG} {left}/{cap} slots left"


def summary_color(left: int) -> EventColor:
    return EventColor.GREEN if left > 0 else EventColor.RED


def appointment_title(request: AppointmentRequest) -> str:
    return (
        f"{APPOINTMENT_TAG} {request.category}: "
        f"{request.last_name.strip()}, {request.first_name.strip()} "
        f"({request.purok.strip()}, {request.barangay.strip()})"
    )


def holiday_title(name: str) -> str:
    return f"{HOLIDAY_TAG} {name}"


class DecrementStatus(str, enum.Enum):
    OK = "ok"
    NO_SLOTS = "no_slots"
    HOLIDAY = "holiday"
    INVALID_DATE = "invalid_date"
    BUSY = "busy"


@dataclass(frozen=True)
class DecrementResult:
    status: DecrementStatus
    # One entry per category, in registry order (empty unless status is OK).
    lefts: tuple[int, ...] = field(default_factory=tuple)

    @property
    def ok(self) -> bool:
        return self.status is DecrementStatus.OK


class BusyError(RuntimeError):
    """Another run holds the ledger lock.

    Normal contention, not a failure: the next scheduled run converges, so it
    must not produce alerts.
    """
