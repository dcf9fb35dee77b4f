from __future__ import annotations

import os
from dataclasses import dataclass
from typing import Iterator, Sequence

from slotsync.calendars import Calendar, JsonFileCalendar
from slotsync.config import Settings
from slotsync.stores import ChoicePublisher, JsonChoices, JsonLedger, JsonResponses, LedgerStore, ResponseSource


@dataclass(frozen=True)
class Category:
    category_id: str
    responses: ResponseSource
    ledger: LedgerStore
    choices: ChoicePublisher
    calendar: Calendar


class Registry:
    """Fixed list of intake categories, validated once at startup."""

    def __init__(self, categories: Sequence[Category]) -> None:
        if not categories:
            raise ValueError("Registry needs at least one category")

        seen: set[str] = set()
        for c in categories:
            if not c.category_id or not c.category_id.strip():
                raise ValueError("Category id must be non-empty")
            if c.category_id in seen:
                raise ValueError(f"Duplicate category id: {c.category_id!r}")
            seen.add(c.category_id)

        self._categories = tuple(categories)
        self._by_id = {c.category_id: c for c in self._categories}

    def __iter__(self) -> Iterator[Category]:
        return iter(self._categories)

    def __len__(self) -> int:
        return len(self._categories)

    @property
    def ids(self) -> tuple[str, ...]:
        return tuple(c.category_id for c in self._categories)

    def get(self, category_id: str) -> Category:
        try:
            return self._by_id[category_id]
        except KeyError:
            raise KeyError(f"Unknown category: {category_id!r}") from None

    @property
    def calendar(self) -> Calendar:
        # All categories share one calendar.
        return self._categories[0].calendar


def build_local_registry(settings: Settings) -> Registry:
    """Bind every configured category to JSON file stores under DATA_DIR."""

    calendar = JsonFileCalendar(os.path.join(settings.data_dir, "calendar.json"))

    def _path(kind: str, category_id: str) -> str:
        return os.path.join(settings.data_dir, kind, f"{category_id}.json")

    return Registry(
        [
            Category(
                category_id=category_id,
                responses=JsonResponses(_path("responses", category_id)),
                ledger=JsonLedger(_path("ledger", category_id)),
                choices=JsonChoices(_path("choices", category_id)),
                calendar=calendar,
            )
            for category_id in settings.categories
        ]
    )
