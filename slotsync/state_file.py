from __future__ import annotations

import datetime as dt
import json
import os
import tempfile
from typing import Any, Callable, Protocol

MAX_ERROR_LOG = 100


class StateStore(Protocol):
    def get(self, key: str, default: Any = None) -> Any: ...

    def set(self, key: str, value: Any) -> None: ...

    def update(self, values: dict[str, Any]) -> None: ...


class MemoryStateStore:
    def __init__(self, initial: dict[str, Any] | None = None) -> None:
        self.data: dict[str, Any] = dict(initial or {})

    def get(self, key: str, default: Any = None) -> Any:
        return self.data.get(key, default)

    def set(self, key: str, value: Any) -> None:
        self.data[key] = value

    def update(self, values: dict[str, Any]) -> None:
        self.data.update(values)


def load_json(path: str) -> dict[str, Any]:
    if not os.path.exists(path):
        return {}

    try:
        with open(path, "r", encoding="utf-8") as f:
            raw = json.load(f)
    except json.JSONDecodeError:
        # Corrupted state shouldn't brick the runs; start fresh.
        return {}

    return raw if isinstance(raw, dict) else {}


def file_stamp(path: str) -> tuple[int, int, int] | None:
    """Identity of the file currently at `path`; changes on every atomic rewrite."""
    try:
        st = os.stat(path)
    except FileNotFoundError:
        return None
    return (st.st_ino, st.st_mtime_ns, st.st_size)


def save_json(path: str, data: dict[str, Any]) -> None:
    folder = os.path.dirname(os.path.abspath(path))
    if folder and not os.path.exists(folder):
        os.makedirs(folder, exist_ok=True)

    # Atomic write
    with tempfile.NamedTemporaryFile("w", delete=False, encoding="utf-8", dir=folder, suffix=".tmp") as tf:
        json.dump(data, tf, ensure_ascii=False, indent=2)
        tmp_name = tf.name

    os.replace(tmp_name, path)


class JsonStateStore:
    """Key-value state persisted to a JSON file on every write.

    Other runs write the same file, so the in-memory copy is reloaded
    whenever the file on disk is no longer the one we last read or wrote.
    Writes are read-modify-write against the latest file.
    """

    def __init__(self, path: str) -> None:
        self.path = path
        self._data: dict[str, Any] = {}
        self._stamp: tuple[int, int, int] | None = None
        self._refresh()

    def _refresh(self) -> None:
        stamp = file_stamp(self.path)
        if stamp != self._stamp:
            self._data = load_json(self.path)
            self._stamp = stamp

    def _save(self) -> None:
        save_json(self.path, self._data)
        self._stamp = file_stamp(self.path)

    def get(self, key: str, default: Any = None) -> Any:
        self._refresh()
        return self._data.get(key, default)

    def set(self, key: str, value: Any) -> None:
        self._refresh()
        self._data[key] = value
        self._save()

    def update(self, values: dict[str, Any]) -> None:
        self._refresh()
        self._data.update(values)
        self._save()


def record_error(
    store: StateStore,
    context: str,
    exc: BaseException,
    *,
    now: Callable[[], dt.datetime] = dt.datetime.now,
) -> None:
    entries = list(store.get("error_log", []))
    entries.append(
        {
            "at": now().isoformat(timespec="seconds"),
            "context": context,
            "error": f"{type(exc).__name__}: {exc}",
        }
    )
    store.set("error_log", entries[-MAX_ERROR_LOG:])


def get_timestamp(store: StateStore, key: str) -> dt.datetime | None:
    raw = store.get(key)
    if not raw:
        return None
    try:
        return dt.datetime.fromisoformat(raw)
    except (TypeError, ValueError):
        return None


def set_timestamp(store: StateStore, key: str, value: dt.datetime) -> None:
    store.set(key, value.isoformat(timespec="seconds"))
