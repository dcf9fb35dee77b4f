from __future__ import annotations

import datetime as dt
import logging
from typing import Callable

import httpx

from slotsync.config import Settings
from slotsync.state_file import StateStore, get_timestamp, record_error, set_timestamp

logger = logging.getLogger(__name__)


def send_telegram_message(*, bot_token: str, chat_id: str, text: str, timeout_seconds: float = 20.0) -> None:
    url = f"https://api.telegram.org/bot{bot_token}/sendMessage"
    payload = {
        "chat_id": chat_id,
        "text": text,
        "disable_web_page_preview": True,
    }

    with httpx.Client(timeout=timeout_seconds) as client:
        r = client.post(url, json=payload)
        r.raise_for_status()
        data = r.json()
        if not data.get("ok", False):
            raise RuntimeError(f"Telegram API error: {data}")


def broadcast_telegram(settings: Settings, text: str) -> None:
    if not settings.telegram_bot_token:
        return

    errors: list[tuple[str, Exception]] = []
    for chat_id in settings.telegram_chat_ids:
        try:
            send_telegram_message(bot_token=settings.telegram_bot_token, chat_id=chat_id, text=text)
        except Exception as e:
            # Best-effort: don't stop sending to other chat_ids.
            logger.warning("Failed to send telegram message to chat_id=%s (%s: %s)", chat_id, type(e).__name__, e)
            errors.append((chat_id, e))

    if errors:
        failed = ", ".join([cid for cid, _ in errors])
        raise RuntimeError(f"Failed to send telegram message to some recipients: {failed}")


class Alerter:
    """Operator alerts, at most one per error class per interval."""

    def __init__(
        self,
        settings: Settings,
        store: StateStore,
        *,
        now: Callable[[], dt.datetime] = dt.datetime.now,
    ) -> None:
        self.settings = settings
        self.store = store
        self._now = now

    def _key(self, error_class: str) -> str:
        return f"alert_last:{error_class}"

    def notify(self, error_class: str, text: str) -> bool:
        """Returns True if the alert went out, False if throttled or not configured."""
        if not self.settings.alerts_enabled:
            logger.debug("Alerts not configured; dropping %s", error_class)
            return False

        now = self._now()
        last = get_timestamp(self.store, self._key(error_class))
        if last is not None and now - last < dt.timedelta(hours=self.settings.alert_interval_hours):
            logger.info("Alert %s throttled (last sent %s)", error_class, last.isoformat(timespec="seconds"))
            return False

        try:
            broadcast_telegram(self.settings, text)
        except Exception as e:
            logger.warning("Failed to send alert %s (%s: %s)", error_class, type(e).__name__, e)
            return False

        set_timestamp(self.store, self._key(error_class), now)
        return True

    def report(self, context: str, exc: BaseException) -> None:
        """Log, keep in the rolling error log, and alert (rate-limited)."""
        logger.error("%s failed (%s: %s)", context, type(exc).__name__, exc)
        record_error(self.store, context, exc, now=self._now)
        self.notify(
            f"{context}:{type(exc).__name__}",
            f"SlotSync: {context} failed.\nReason: {type(exc).__name__}: {exc}",
        )
