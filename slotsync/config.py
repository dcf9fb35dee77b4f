from __future__ import annotations

import os
from dataclasses import dataclass

from dotenv import load_dotenv


def _parse_telegram_chat_ids(raw: str) -> tuple[str, ...]:
    # TELEGRAM_CHAT_ID supports a single value or a comma-separated list.
    # Examples:
    #   TELEGRAM_CHAT_ID=123456789
    #   TELEGRAM_CHAT_ID=123456789,-1001234567890
    parts = [p.strip() for p in raw.split(",")]
    parts = [p for p in parts if p]

    seen: set[str] = set()
    result: list[str] = []
    for p in parts:
        # Telegram allows numeric IDs; groups/supergroups can be negative.
        try:
            int(p)
        except ValueError as e:
            raise RuntimeError(f"Invalid TELEGRAM_CHAT_ID value: {p!r}. Expected integer chat id.") from e

        if p == "0":
            raise RuntimeError("Invalid TELEGRAM_CHAT_ID value: '0' is not a valid chat id")

        if p in seen:
            continue
        seen.add(p)
        result.append(p)

    return tuple(result)


def _parse_categories(raw: str) -> tuple[str, ...]:
    parts = [p.strip() for p in raw.split(",")]
    result: list[str] = []
    for p in parts:
        if not p:
            continue
        if p in result:
            raise RuntimeError(f"Duplicate category in CATEGORIES: {p!r}")
        result.append(p)

    if not result:
        raise RuntimeError("CATEGORIES is empty. Provide at least one category id.")

    return tuple(result)


@dataclass(frozen=True)
class Settings:
    categories: tuple[str, ...]

    data_dir: str = "data"
    # Durable counters, throttling timestamps, holiday cache, error log
    state_file: str = "state.json"
    timezone: str = "Asia/Manila"

    slot_cap: int = 20
    future_days: int = 60

    # Calendar API quota
    run_call_limit: int = 300
    daily_call_limit: int = 5000

    lock_timeout_seconds: float = 30.0
    # A lock file older than this is treated as left behind by a crashed run.
    lock_stale_seconds: float = 600.0

    holiday_calendar_url: str | None = None
    holiday_cache_ttl_hours: int = 12

    # Attempts at creating the appointment event before the booking is reverted.
    calendar_retry_attempts: int = 2

    response_retention_days: int = 90
    integrity_interval_minutes: int = 30
    sync_interval_minutes: int = 60
    # Every N submissions the incremental path also runs a full-range sync.
    resync_every_submissions: int = 10

    alert_interval_hours: int = 24
    telegram_bot_token: str | None = None
    telegram_chat_ids: tuple[str, ...] = ()

    @property
    def alerts_enabled(self) -> bool:
        return bool(self.telegram_bot_token and self.telegram_chat_ids)


def _require(name: str) -> str:
    value = os.getenv(name)
    if not value:
        raise RuntimeError(f"Missing required environment variable: {name}")
    return value


def _int_env(name: str, default: int, *, minimum: int = 0) -> int:
    raw = os.getenv(name, str(default)).strip()
    try:
        value = int(raw)
    except ValueError as e:
        raise RuntimeError(f"Invalid {name} value: {raw!r}. Expected integer.") from e
    if value < minimum:
        raise RuntimeError(f"{name} must be >= {minimum}")
    return value


def _optional(name: str) -> str | None:
    value = os.getenv(name, "").strip()
    return value or None


def load_settings(dotenv_path: str | None = None) -> Settings:
    # Prefer .env in repo root; dotenv_path allows overriding in tests.
    load_dotenv(dotenv_path=dotenv_path, override=False)

    telegram_bot_token = _optional("TELEGRAM_BOT_TOKEN")
    telegram_chat_ids = _parse_telegram_chat_ids(os.getenv("TELEGRAM_CHAT_ID", ""))
    if telegram_bot_token and not telegram_chat_ids:
        raise RuntimeError("TELEGRAM_CHAT_ID is empty. Provide at least one chat id.")

    return Settings(
        categories=_parse_categories(_require("CATEGORIES")),
        data_dir=os.getenv("DATA_DIR", "data"),
        state_file=os.getenv("STATE_FILE", "state.json"),
        timezone=os.getenv("TIMEZONE", "Asia/Manila"),
        slot_cap=_int_env("SLOT_CAP", 20, minimum=1),
        future_days=_int_env("FUTURE_DAYS", 60, minimum=1),
        run_call_limit=_int_env("RUN_CALL_LIMIT", 300, minimum=1),
        daily_call_limit=_int_env("DAILY_CALL_LIMIT", 5000, minimum=1),
        lock_timeout_seconds=float(_int_env("LOCK_TIMEOUT_SECONDS", 30, minimum=1)),
        lock_stale_seconds=float(_int_env("LOCK_STALE_SECONDS", 600, minimum=1)),
        holiday_calendar_url=_optional("HOLIDAY_CALENDAR_URL"),
        holiday_cache_ttl_hours=_int_env("HOLIDAY_CACHE_TTL_HOURS", 12, minimum=1),
        calendar_retry_attempts=_int_env("CALENDAR_RETRY_ATTEMPTS", 2, minimum=1),
        response_retention_days=_int_env("RESPONSE_RETENTION_DAYS", 90, minimum=1),
        integrity_interval_minutes=_int_env("INTEGRITY_INTERVAL_MINUTES", 30),
        sync_interval_minutes=_int_env("SYNC_INTERVAL_MINUTES", 60),
        resync_every_submissions=_int_env("RESYNC_EVERY_SUBMISSIONS", 10),
        alert_interval_hours=_int_env("ALERT_INTERVAL_HOURS", 24),
        telegram_bot_token=telegram_bot_token,
        telegram_chat_ids=telegram_chat_ids,
    )
