from __future__ import annotations

import datetime as dt
import logging

from slotsync.dates import BusinessDays, add_days, format_date, parse_date
from slotsync.domain import DecrementResult, DecrementStatus, LedgerRow
from slotsync.lock import RunLock
from slotsync.registry import Category, Registry

logger = logging.getLogger(__name__)


class AvailabilityService:
    """Owns the per-category, per-date slot ledger.

    Every mutation runs under the shared run lock. Rows move through
    unseeded -> seeded (left=cap) -> decremented -> pruned; `booked + left`
    always equals the slot cap.
    """

    def __init__(self, registry: Registry, business_days: BusinessDays, lock: RunLock, *, slot_cap: int) -> None:
        self.registry = registry
        self.business_days = business_days
        self.lock = lock
        self.slot_cap = slot_cap

    # Reading

    def _indexed_rows(self, category: Category) -> list[tuple[int, LedgerRow]]:
        result: list[tuple[int, LedgerRow]] = []
        for index, raw in enumerate(category.ledger.read_rows()):
            try:
                row = LedgerRow(
                    date=parse_date(str(raw["date"])),
                    booked=int(raw["booked"]),
                    left=int(raw["left"]),
                )
            except (KeyError, TypeError, ValueError) as e:
                logger.warning(
                    "Skipping malformed ledger row %d in %s (%s: %s)", index, category.category_id, type(e).__name__, e
                )
                continue
            result.append((index, row))
        return result

    def rows_for(self, category: Category) -> list[LedgerRow]:
        return [row for _, row in self._indexed_rows(category)]

    def _find(self, category: Category, date: dt.date) -> tuple[int, LedgerRow] | None:
        for index, row in self._indexed_rows(category):
            if row.date == date:
                return index, row
        return None

    def _find_or_create(self, category: Category, date: dt.date) -> tuple[int, LedgerRow]:
        found = self._find(category, date)
        if found is not None:
            return found
        logger.info("Creating ledger row for %s in %s", date, category.category_id)
        category.ledger.append_row({"date": format_date(date), "booked": 0, "left": self.slot_cap})
        found = self._find(category, date)
        if found is None:
            raise RuntimeError(f"Ledger row for {date} in {category.category_id} vanished after append")
        return found

    def left_for(self, date: dt.date) -> dict[str, int]:
        """Slots left per category; a date without a row still has full capacity."""
        result: dict[str, int] = {}
        for category in self.registry:
            found = self._find(category, date)
            result[category.category_id] = found[1].left if found else self.slot_cap
        return result

    def min_left(self, date: dt.date) -> int:
        return min(self.left_for(date).values())

    def min_left_by_date(self) -> dict[dt.date, int]:
        """min(left) across categories for every date that has at least one row."""
        per_date: dict[dt.date, list[int]] = {}
        for category in self.registry:
            seen: set[dt.date] = set()
            for row in self.rows_for(category):
                if row.date in seen:
                    continue
                seen.add(row.date)
                per_date.setdefault(row.date, []).append(row.left)
        n = len(self.registry)
        # Missing rows in some category count as full capacity.
        return {d: min(lefts + ([self.slot_cap] if len(lefts) < n else [])) for d, lefts in per_date.items()}

    # Seeding

    def seed_availability_window(self, start: dt.date, days: int) -> int | None:
        """Prune rows outside [start, start+days], add missing valid dates.

        Returns the number of rows added, or None when the lock is busy.
        """

        end = add_days(start, days)
        if not self.lock.acquire():
            logger.info("Seeding skipped: ledger is locked by another run")
            return None

        try:
            valid = self.business_days.valid_dates(start, end)
            added = 0
            for category in self.registry:
                added += self._seed_category(category, start, end, valid)
            logger.info("Seeded ledger window %s..%s: %d rows added", start, end, added)
            return added
        finally:
            self.lock.release()

    def _seed_category(self, category: Category, start: dt.date, end: dt.date, valid: list[dt.date]) -> int:
        parsed = dict(self._indexed_rows(category))
        raw_count = len(category.ledger.read_rows())

        stale: list[int] = []
        present: set[dt.date] = set()
        for index in range(raw_count):
            row = parsed.get(index)
            if row is None or not (start <= row.date <= end) or row.date in present:
                stale.append(index)
                continue
            present.add(row.date)

        if stale:
            logger.info("Pruning %d ledger rows from %s", len(stale), category.category_id)
            category.ledger.delete_rows(stale)

        missing = [d for d in valid if d not in present]
        for d in missing:
            category.ledger.append_row({"date": format_date(d), "booked": 0, "left": self.slot_cap})

        if stale or missing:
            category.ledger.sort_by_date()
        return len(missing)

    # Booking

    def decrement_slot_all_categories(self, date: dt.date) -> DecrementResult:
        """Take one slot on `date` from every category, or from none of them."""

        if self.business_days.holidays.is_holiday(date):
            logger.info("Booking rejected: %s is a holiday", date)
            return DecrementResult(DecrementStatus.HOLIDAY)
        if not self.business_days.is_valid_business_date(date):
            logger.info("Booking rejected: %s is not a bookable business date", date)
            return DecrementResult(DecrementStatus.INVALID_DATE)

        if not self.lock.acquire():
            logger.warning("Booking for %s skipped: system busy", date)
            return DecrementResult(DecrementStatus.BUSY)

        try:
            # Phase 1: read and check every category before touching anything.
            located: list[tuple[Category, int, LedgerRow]] = []
            overbooked: list[str] = []
            for category in self.registry:
                index, row = self._find_or_create(category, date)
                if row.left <= 0:
                    overbooked.append(category.category_id)
                located.append((category, index, row))

            if overbooked:
                logger.info("Booking rejected: no slots left on %s in %s", date, ", ".join(overbooked))
                return DecrementResult(DecrementStatus.NO_SLOTS)

            # Phase 2: write.
            lefts: list[int] = []
            for category, index, row in located:
                left = max(0, row.left - 1)
                booked = min(self.slot_cap, row.booked + 1)
                category.ledger.update_row(index, booked=booked, left=left)
                lefts.append(left)

            logger.info("Booked %s: left per category %s", date, dict(zip(self.registry.ids, lefts)))
            return DecrementResult(DecrementStatus.OK, tuple(lefts))
        finally:
            self.lock.release()

    def revert_slot_all_categories(self, date: dt.date) -> bool:
        """Give back one slot on `date` in every category (compensating a decrement)."""

        if not self.lock.acquire():
            logger.error("Could not revert booking on %s: system busy", date)
            return False

        try:
            for category in self.registry:
                found = self._find(category, date)
                if found is None:
                    logger.warning("No ledger row to revert for %s in %s", date, category.category_id)
                    continue
                index, row = found
                left = min(self.slot_cap, max(0, row.left + 1))
                booked = max(0, min(self.slot_cap, row.booked - 1))
                category.ledger.update_row(index, booked=booked, left=left)
            logger.info("Reverted booking on %s in all categories", date)
            return True
        finally:
            self.lock.release()

    # Integrity

    def repair_rows(self) -> int:
        """Clamp `left` into [0, cap] and restore booked = cap - left. Returns rows fixed."""

        if not self.lock.acquire():
            logger.info("Ledger repair skipped: ledger is locked by another run")
            return 0

        fixed = 0
        try:
            for category in self.registry:
                for index, row in self._indexed_rows(category):
                    left = min(self.slot_cap, max(0, row.left))
                    booked = self.slot_cap - left
                    if (booked, left) != (row.booked, row.left):
                        logger.warning(
                            "Repairing ledger %s %s: booked=%d left=%d -> booked=%d left=%d",
                            category.category_id,
                            row.date,
                            row.booked,
                            row.left,
                            booked,
                            left,
                        )
                        category.ledger.update_row(index, booked=booked, left=left)
                        fixed += 1
            return fixed
        finally:
            self.lock.release()
