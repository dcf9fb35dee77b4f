from __future__ import annotations

import datetime as dt
import logging

from slotsync.availability import AvailabilityService

logger = logging.getLogger(__name__)


def choice_label(date: dt.date, left: int) -> str:
    # The intake form stores the whole label; extract_date() recovers the ISO part.
    noun = "slot" if left == 1 else "slots"
    return f"{date:%A}, {date:%B} {date.day}, {date.year} ({date.isoformat()}) - {left} {noun} left"


def bookable_labels(availability: AvailabilityService) -> list[str]:
    business_days = availability.business_days
    return [
        choice_label(d, left)
        for d, left in sorted(availability.min_left_by_date().items())
        if left > 0 and business_days.is_valid_business_date(d)
    ]


def refresh_choices(availability: AvailabilityService) -> int:
    """Replace every category's date dropdown with the currently bookable dates."""

    labels = bookable_labels(availability)
    failed = 0
    for category in availability.registry:
        try:
            category.choices.set_choices(labels)
        except Exception as e:
            failed += 1
            logger.error("Failed to publish choices for %s (%s: %s)", category.category_id, type(e).__name__, e)
    logger.info("Published %d bookable dates to %d categories", len(labels), len(availability.registry) - failed)
    return failed
