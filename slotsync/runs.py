from __future__ import annotations

import datetime as dt
import enum
import logging
import os
from dataclasses import dataclass
from typing import Callable

from tenacity import RetryCallState, retry, stop_after_attempt, wait_exponential

from slotsync.availability import AvailabilityService
from slotsync.choices import refresh_choices
from slotsync.config import Settings
from slotsync.dates import BusinessDays, now_in, today_in
from slotsync.domain import AppointmentRequest, DecrementStatus
from slotsync.holidays import HolidayService, IcsHolidaySource
from slotsync.lock import RunLock
from slotsync.notifier import Alerter
from slotsync.quota import QuotaManager
from slotsync.registry import Category, Registry, build_local_registry
from slotsync.state_file import JsonStateStore, StateStore, get_timestamp, set_timestamp
from slotsync.stores import COL_TIMESTAMP, parse_request, parse_timestamp
from slotsync.sync import CalendarSync

logger = logging.getLogger(__name__)

LAST_NIGHTLY_KEY = "last_nightly_at"
LAST_SYNC_KEY = "last_sync_at"
LAST_INTEGRITY_KEY = "last_integrity_at"
INTEGRITY_COUNT_KEY = "integrity_response_count"
SUBMISSION_COUNTER_KEY = "submission_counter"


class RunOutcome(str, enum.Enum):
    DONE = "done"
    SKIPPED = "skipped"  # lock busy
    THROTTLED = "throttled"
    UNCHANGED = "unchanged"


class SubmissionStatus(str, enum.Enum):
    BOOKED = "booked"
    REVERTED = "reverted"
    REJECTED_NO_SLOTS = "rejected_no_slots"
    REJECTED_HOLIDAY = "rejected_holiday"
    REJECTED_INVALID_DATE = "rejected_invalid_date"
    BUSY = "busy"
    NO_REQUEST = "no_request"


_REJECTIONS = {
    DecrementStatus.NO_SLOTS: SubmissionStatus.REJECTED_NO_SLOTS,
    DecrementStatus.HOLIDAY: SubmissionStatus.REJECTED_HOLIDAY,
    DecrementStatus.INVALID_DATE: SubmissionStatus.REJECTED_INVALID_DATE,
    DecrementStatus.BUSY: SubmissionStatus.BUSY,
}


@dataclass(frozen=True)
class SubmissionOutcome:
    status: SubmissionStatus
    request: AppointmentRequest | None = None
    lefts: tuple[int, ...] = ()

    @property
    def accepted(self) -> bool:
        return self.status is SubmissionStatus.BOOKED


@dataclass
class RunContext:
    """Everything one short-lived run needs; built fresh for every run."""

    settings: Settings
    store: StateStore
    registry: Registry
    holidays: HolidayService
    business_days: BusinessDays
    lock: RunLock
    quota: QuotaManager
    availability: AvailabilityService
    sync: CalendarSync
    alerter: Alerter
    now: Callable[[], dt.datetime]

    @classmethod
    def build(
        cls,
        settings: Settings,
        *,
        registry: Registry | None = None,
        store: StateStore | None = None,
        lock: RunLock | None = None,
        holiday_source: IcsHolidaySource | None = None,
        today: Callable[[], dt.date] | None = None,
        now: Callable[[], dt.datetime] | None = None,
    ) -> "RunContext":
        today = today or today_in(settings.timezone)
        now = now or now_in(settings.timezone)
        store = store if store is not None else JsonStateStore(settings.state_file)
        if registry is None:
            registry = build_local_registry(settings)
        if holiday_source is None and settings.holiday_calendar_url:
            holiday_source = IcsHolidaySource(settings.holiday_calendar_url)

        holidays = HolidayService(
            store,
            holiday_source,
            ttl=dt.timedelta(hours=settings.holiday_cache_ttl_hours),
            now=now,
        )
        business_days = BusinessDays(holidays, future_days=settings.future_days, today=today)
        lock = lock or RunLock(
            os.path.join(settings.data_dir, "ledger.lock"),
            timeout=settings.lock_timeout_seconds,
            stale_after=settings.lock_stale_seconds,
        )
        quota = QuotaManager(
            registry.calendar,
            store,
            run_limit=settings.run_call_limit,
            daily_limit=settings.daily_call_limit,
            today=today,
        )
        availability = AvailabilityService(registry, business_days, lock, slot_cap=settings.slot_cap)
        return cls(
            settings=settings,
            store=store,
            registry=registry,
            holidays=holidays,
            business_days=business_days,
            lock=lock,
            quota=quota,
            availability=availability,
            sync=CalendarSync(quota, availability),
            alerter=Alerter(settings, store, now=now),
            now=now,
        )


def _step(ctx: RunContext, name: str, fn: Callable[[], object]) -> bool:
    """Run one sub-step; failures are reported and the run continues."""
    try:
        fn()
        return True
    except Exception as e:
        ctx.alerter.report(name, e)
        return False


def _throttled(ctx: RunContext, key: str, minutes: int) -> bool:
    last = get_timestamp(ctx.store, key)
    return last is not None and ctx.now() - last < dt.timedelta(minutes=minutes)


def prune_expired_responses(ctx: RunContext, category: Category) -> int:
    """Delete response rows submitted more than RESPONSE_RETENTION_DAYS ago."""
    cutoff = ctx.now() - dt.timedelta(days=ctx.settings.response_retention_days)
    expired: list[int] = []
    for index, row in enumerate(category.responses.read_rows()):
        try:
            submitted_at = parse_timestamp(row[COL_TIMESTAMP])
        except (KeyError, ValueError):
            logger.warning("Response row %d in %s has no usable timestamp; keeping it", index, category.category_id)
            continue
        if submitted_at.replace(tzinfo=None) < cutoff:
            expired.append(index)

    if expired:
        category.responses.delete_rows(expired)
        logger.info("Pruned %d expired responses from %s", len(expired), category.category_id)
    return len(expired)


# Nightly


def run_nightly(ctx: RunContext) -> RunOutcome:
    if not ctx.lock.acquire():
        logger.info("Nightly rebuild skipped: another run holds the lock")
        return RunOutcome.SKIPPED

    try:
        today = ctx.business_days.today()
        end = ctx.business_days.window_end()
        logger.info("Nightly rebuild for %s..%s", today, end)

        _step(ctx, "purge past events", ctx.sync.purge_past_events)
        _step(ctx, "purge summaries beyond window", ctx.sync.purge_summaries_beyond_window)
        _step(ctx, "purge invalid summaries", lambda: ctx.sync.purge_invalid_summaries(today, end))
        for category in ctx.registry:
            _step(ctx, f"prune responses {category.category_id}", lambda c=category: prune_expired_responses(ctx, c))
        _step(ctx, "seed availability", lambda: ctx.availability.seed_availability_window(today, ctx.settings.future_days))
        if _step(ctx, "full calendar sync", lambda: ctx.sync.sync_range(today, end)):
            set_timestamp(ctx.store, LAST_SYNC_KEY, ctx.now())
        _step(ctx, "refresh choices", lambda: refresh_choices(ctx.availability))

        set_timestamp(ctx.store, LAST_NIGHTLY_KEY, ctx.now())
        if ctx.quota.exhausted:
            logger.warning("Calendar quota ran out during the nightly rebuild; %d writes were skipped", ctx.quota.denied)
        logger.info(
            "Nightly rebuild finished (calendar calls this run: %d, today: %d)",
            ctx.quota.calls_this_run,
            ctx.quota.calls_today,
        )
        return RunOutcome.DONE
    finally:
        ctx.lock.release()


# Submission


def _log_after_attempt(retry_state: RetryCallState) -> None:
    if retry_state.outcome is not None and retry_state.outcome.failed:
        exc = retry_state.outcome.exception()
        logger.warning(
            "Appointment attempt %s failed (%s: %s)",
            retry_state.attempt_number,
            type(exc).__name__,
            exc,
        )


def _ensure_appointment_with_retry(ctx: RunContext, request: AppointmentRequest):
    decorated = retry(
        stop=stop_after_attempt(ctx.settings.calendar_retry_attempts),
        wait=wait_exponential(multiplier=1, min=1, max=4),
        after=_log_after_attempt,
        reraise=True,
    )(ctx.sync.ensure_appointment)

    return decorated(request)


def latest_request(category: Category) -> tuple[int, AppointmentRequest] | None:
    latest: tuple[int, AppointmentRequest] | None = None
    for index, row in enumerate(category.responses.read_rows()):
        request = parse_request(row, category.category_id)
        if request is None:
            continue
        if latest is None or request.submitted_at >= latest[1].submitted_at:
            latest = (index, request)
    return latest


def _drop_response(category: Category, request: AppointmentRequest, reason: str) -> None:
    """Remove the response row so later syncs never turn it into an appointment."""
    for index, row in enumerate(category.responses.read_rows()):
        if parse_request(row, category.category_id) == request:
            category.responses.delete_rows([index])
            logger.info("Removed %s response of %s %s", reason, request.first_name, request.last_name)
            return


def run_submission(ctx: RunContext, category_id: str) -> SubmissionOutcome:
    """Book the newest response of `category_id` and update the calendar for its date."""

    category = ctx.registry.get(category_id)
    found = latest_request(category)
    if found is None:
        logger.warning("No parseable response in %s; nothing to book", category_id)
        return SubmissionOutcome(SubmissionStatus.NO_REQUEST)
    _, request = found

    if not ctx.lock.acquire():
        logger.warning("Submission for %s skipped: system busy", request.chosen_date)
        return SubmissionOutcome(SubmissionStatus.BUSY, request)

    try:
        result = ctx.availability.decrement_slot_all_categories(request.chosen_date)
        if not result.ok:
            logger.info("Submission rejected (%s) for %s", result.status.value, request.chosen_date)
            if result.status is not DecrementStatus.BUSY:
                _step(ctx, "drop rejected response", lambda: _drop_response(category, request, "rejected"))
            return SubmissionOutcome(_REJECTIONS[result.status], request)

        status = SubmissionStatus.BOOKED
        try:
            _ensure_appointment_with_retry(ctx, request)
        except Exception as e:
            ctx.alerter.report("create appointment", e)
            if ctx.availability.revert_slot_all_categories(request.chosen_date):
                _step(ctx, "drop reverted response", lambda: _drop_response(category, request, "reverted"))
                status = SubmissionStatus.REVERTED

        date = request.chosen_date
        _step(ctx, "summary upsert", lambda: ctx.sync.sync_summary(date))
        _step(ctx, "appointment sync", lambda: ctx.sync.sync_appointments(date, ctx.sync.load_requests()))
        _step(ctx, f"prune responses {category_id}", lambda: prune_expired_responses(ctx, category))
        _step(ctx, "refresh choices", lambda: refresh_choices(ctx.availability))
        _step(ctx, "fallback resync", lambda: _maybe_resync(ctx))

        lefts = result.lefts if status is SubmissionStatus.BOOKED else ()
        return SubmissionOutcome(status, request, lefts)
    finally:
        ctx.lock.release()


def _maybe_resync(ctx: RunContext) -> None:
    counter = int(ctx.store.get(SUBMISSION_COUNTER_KEY, 0)) + 1
    ctx.store.set(SUBMISSION_COUNTER_KEY, counter)
    every = ctx.settings.resync_every_submissions
    if every and counter % every == 0:
        logger.info("Submission #%d: running fallback full-range sync", counter)
        ctx.sync.sync_range(ctx.business_days.today(), ctx.business_days.window_end())
        set_timestamp(ctx.store, LAST_SYNC_KEY, ctx.now())


# Periodic


def _response_count(ctx: RunContext) -> int:
    return sum(len(c.responses.read_rows()) for c in ctx.registry)


def run_integrity_check(ctx: RunContext, *, force: bool = False) -> RunOutcome:
    if not force and _throttled(ctx, LAST_INTEGRITY_KEY, ctx.settings.integrity_interval_minutes):
        logger.info("Integrity check throttled")
        return RunOutcome.THROTTLED

    count = _response_count(ctx)
    if not force and ctx.store.get(INTEGRITY_COUNT_KEY) == count:
        logger.info("Integrity check: %d responses, unchanged since last check", count)
        set_timestamp(ctx.store, LAST_INTEGRITY_KEY, ctx.now())
        return RunOutcome.UNCHANGED

    if not ctx.lock.acquire():
        logger.info("Integrity check skipped: another run holds the lock")
        return RunOutcome.SKIPPED

    try:
        today = ctx.business_days.today()
        end = ctx.business_days.window_end()
        holidays: dict[dt.date, str] = {}

        def _fetch_holidays() -> None:
            holidays.update(ctx.holidays.fetch_range(today, end))

        _step(ctx, "repair ledger", ctx.availability.repair_rows)
        _step(ctx, "fetch holidays", _fetch_holidays)
        _step(ctx, "purge holiday events", lambda: ctx.sync.purge_holiday_events(today, end))
        _step(ctx, "holiday markers", lambda: ctx.sync.upsert_holiday_markers(today, end, holidays))
        _step(ctx, "purge orphan appointments", lambda: ctx.sync.purge_orphan_appointments(today, end))
        _step(ctx, "validate summaries", lambda: ctx.sync.validate_summaries(today, end))

        ctx.store.set(INTEGRITY_COUNT_KEY, count)
        set_timestamp(ctx.store, LAST_INTEGRITY_KEY, ctx.now())
        return RunOutcome.DONE
    finally:
        ctx.lock.release()


def run_hourly_sync(ctx: RunContext, *, force: bool = False) -> RunOutcome:
    if not force and _throttled(ctx, LAST_SYNC_KEY, ctx.settings.sync_interval_minutes):
        logger.info("Hourly sync throttled")
        return RunOutcome.THROTTLED

    if not ctx.lock.acquire():
        logger.info("Hourly sync skipped: another run holds the lock")
        return RunOutcome.SKIPPED

    try:
        today = ctx.business_days.today()
        if _step(ctx, "full calendar sync", lambda: ctx.sync.sync_range(today, ctx.business_days.window_end())):
            set_timestamp(ctx.store, LAST_SYNC_KEY, ctx.now())
        _step(ctx, "refresh choices", lambda: refresh_choices(ctx.availability))
        return RunOutcome.DONE
    finally:
        ctx.lock.release()


def reset_daily_quota(ctx: RunContext) -> None:
    ctx.quota.reset_daily()
