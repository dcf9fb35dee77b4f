from __future__ import annotations

import datetime as dt
import logging
from typing import Any, Iterable, Protocol

from slotsync.dates import extract_date
from slotsync.domain import AppointmentRequest
from slotsync.state_file import file_stamp, load_json, save_json

logger = logging.getLogger(__name__)

LEDGER_HEADER = ("date", "booked", "left")

COL_TIMESTAMP = "Timestamp"
COL_LAST_NAME = "Last Name"
COL_FIRST_NAME = "First Name"
COL_PUROK = "Purok"
COL_BARANGAY = "Barangay"
COL_DATE = "Preferred Date"

RESPONSE_COLUMNS = (COL_TIMESTAMP, COL_LAST_NAME, COL_FIRST_NAME, COL_PUROK, COL_BARANGAY, COL_DATE)

_TIMESTAMP_FORMATS = ("%m/%d/%Y %H:%M:%S", "%Y-%m-%d %H:%M:%S")

Row = dict[str, Any]


class LedgerStore(Protocol):
    def read_rows(self) -> list[Row]: ...

    def append_row(self, row: Row) -> None: ...

    def update_row(self, index: int, *, booked: int, left: int) -> None: ...

    def delete_rows(self, indices: Iterable[int]) -> None: ...

    def sort_by_date(self) -> None: ...


class ResponseSource(Protocol):
    def read_rows(self) -> list[Row]: ...

    def delete_rows(self, indices: Iterable[int]) -> None: ...


class ChoicePublisher(Protocol):
    def set_choices(self, labels: list[str]) -> None: ...


class InMemoryTable:
    """Rows addressed by their position in the latest read."""

    def __init__(self, rows: Iterable[Row] = ()) -> None:
        self.rows: list[Row] = [dict(r) for r in rows]

    def read_rows(self) -> list[Row]:
        return [dict(r) for r in self.rows]

    def append_row(self, row: Row) -> None:
        self.rows.append(dict(row))
        self._changed()

    def delete_rows(self, indices: Iterable[int]) -> None:
        # Highest index first so earlier positions stay valid.
        for index in sorted(set(indices), reverse=True):
            del self.rows[index]
        self._changed()

    def _changed(self) -> None:
        pass


class InMemoryLedger(InMemoryTable):
    def update_row(self, index: int, *, booked: int, left: int) -> None:
        self.rows[index]["booked"] = booked
        self.rows[index]["left"] = left
        self._changed()

    def sort_by_date(self) -> None:
        self.rows.sort(key=lambda r: str(r.get("date", "")))
        self._changed()


class InMemoryResponses(InMemoryTable):
    pass


class InMemoryChoices:
    def __init__(self) -> None:
        self.labels: list[str] = []

    def set_choices(self, labels: list[str]) -> None:
        self.labels = list(labels)


class _JsonRows:
    """Rows kept in a JSON file that other runs may rewrite between our calls."""

    path: str
    rows: list[Row]
    _stamp: tuple[int, int, int] | None = None

    def _load_rows(self) -> list[Row]:
        self._stamp = file_stamp(self.path)
        return [r for r in load_json(self.path).get("rows", []) if isinstance(r, dict)]

    def _refresh(self) -> None:
        if file_stamp(self.path) != self._stamp:
            self.rows = self._load_rows()

    def read_rows(self) -> list[Row]:
        self._refresh()
        return super().read_rows()

    def append_row(self, row: Row) -> None:
        self._refresh()
        super().append_row(row)

    def _changed(self) -> None:
        save_json(self.path, {"rows": self.rows})
        self._stamp = file_stamp(self.path)


class JsonLedger(_JsonRows, InMemoryLedger):
    def __init__(self, path: str) -> None:
        self.path = path
        InMemoryLedger.__init__(self, self._load_rows())


class JsonResponses(_JsonRows, InMemoryResponses):
    def __init__(self, path: str) -> None:
        self.path = path
        InMemoryResponses.__init__(self, self._load_rows())


class JsonChoices:
    def __init__(self, path: str) -> None:
        self.path = path

    @property
    def labels(self) -> list[str]:
        return list(load_json(self.path).get("choices", []))

    def set_choices(self, labels: list[str]) -> None:
        save_json(self.path, {"choices": list(labels)})


def parse_timestamp(value: Any) -> dt.datetime:
    if isinstance(value, dt.datetime):
        return value
    raw = str(value).strip()
    try:
        return dt.datetime.fromisoformat(raw)
    except ValueError:
        pass
    for fmt in _TIMESTAMP_FORMATS:
        try:
            return dt.datetime.strptime(raw, fmt)
        except ValueError:
            continue
    raise ValueError(f"Unrecognized timestamp: {raw!r}")


def parse_request(row: Row, category: str) -> AppointmentRequest | None:
    """Build a request from a response row; malformed rows give None."""

    try:
        chosen = extract_date(str(row[COL_DATE]))
        if chosen is None:
            raise ValueError(f"no YYYY-MM-DD in {row[COL_DATE]!r}")
        request = AppointmentRequest(
            last_name=str(row[COL_LAST_NAME]).strip(),
            first_name=str(row[COL_FIRST_NAME]).strip(),
            purok=str(row.get(COL_PUROK, "")).strip(),
            barangay=str(row.get(COL_BARANGAY, "")).strip(),
            chosen_date=chosen,
            submitted_at=parse_timestamp(row[COL_TIMESTAMP]),
            category=category,
        )
    except (KeyError, ValueError) as e:
        logger.warning("Skipping malformed response row in %s (%s: %s)", category, type(e).__name__, e)
        return None

    if not request.last_name or not request.first_name:
        logger.warning("Skipping response row without a name in %s", category)
        return None
    return request
