from __future__ import annotations

import contextlib
import logging
import os
import socket
import time
import uuid
from typing import Iterator

from tenacity import RetryError, Retrying, retry_if_result, stop_after_delay, wait_fixed

from slotsync.domain import BusyError

logger = logging.getLogger(__name__)


class RunLock:
    """Single named advisory lock shared by every ledger-mutating run.

    Implemented as an exclusively created lock file so that separate
    processes (nightly job, submission hook, integrity check) exclude each
    other. Re-entrant inside one process. The file names its owner
    (pid, host, token); an old file is only broken when that owner is gone.
    Long runs call `touch()` to keep the file fresh for other hosts.
    """

    def __init__(
        self,
        path: str,
        *,
        timeout: float = 30.0,
        stale_after: float = 600.0,
        poll_interval: float = 0.5,
    ) -> None:
        self.path = path
        self.timeout = timeout
        self.stale_after = stale_after
        self.poll_interval = poll_interval
        self._depth = 0
        self._owner = ""

    @property
    def held(self) -> bool:
        return self._depth > 0

    def _break_if_stale(self) -> None:
        try:
            age = time.time() - os.path.getmtime(self.path)
        except FileNotFoundError:
            return
        if age <= self.stale_after:
            return

        owner = _read_owner(self.path)
        if owner is None:
            return
        if _owner_alive(owner):
            logger.info("Lock %s is %.0fs old but its owner is still running", self.path, age)
            return

        # Move the file aside before judging it, so a lock taken since we looked is never removed.
        aside = f"{self.path}.{os.getpid()}.stale"
        try:
            os.replace(self.path, aside)
        except FileNotFoundError:
            return
        if _read_owner(aside) == owner:
            logger.warning("Breaking stale lock %s (age %.0fs, owner %s)", self.path, age, owner)
        else:
            # Someone broke and re-took it in between: put theirs back.
            with contextlib.suppress(FileExistsError):
                os.link(aside, self.path)
        os.remove(aside)

    def _try_create(self) -> bool:
        self._break_if_stale()
        folder = os.path.dirname(os.path.abspath(self.path))
        os.makedirs(folder, exist_ok=True)
        try:
            fd = os.open(self.path, os.O_CREAT | os.O_EXCL | os.O_WRONLY)
        except FileExistsError:
            return False
        owner = f"{os.getpid()} {socket.gethostname()} {uuid.uuid4().hex}"
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            f.write(owner + "\n")
        self._owner = owner
        return True

    def touch(self) -> None:
        """Refresh the lock file's mtime while holding it."""
        if self._depth and _read_owner(self.path) == self._owner:
            with contextlib.suppress(FileNotFoundError):
                os.utime(self.path)

    def acquire(self) -> bool:
        """Wait up to `timeout` seconds; False means another run holds the lock."""
        if self._depth:
            self._depth += 1
            return True

        retryer = Retrying(
            stop=stop_after_delay(self.timeout),
            wait=wait_fixed(self.poll_interval),
            retry=retry_if_result(lambda created: not created),
        )
        try:
            retryer(self._try_create)
        except RetryError:
            logger.info("Lock %s is busy after %.0fs", self.path, self.timeout)
            return False

        self._depth = 1
        return True

    def release(self) -> None:
        if not self._depth:
            return
        self._depth -= 1
        if self._depth == 0:
            if _read_owner(self.path) != self._owner:
                logger.warning("Lock %s was taken over while held; leaving it", self.path)
                return
            with contextlib.suppress(FileNotFoundError):
                os.remove(self.path)

    @contextlib.contextmanager
    def hold(self) -> Iterator[None]:
        if not self.acquire():
            raise BusyError(f"Lock {self.path} is held by another run")
        try:
            yield
        finally:
            self.release()


def _read_owner(path: str) -> str | None:
    try:
        with open(path, "r", encoding="utf-8") as f:
            return f.read().strip()
    except FileNotFoundError:
        return None


def _owner_alive(owner: str) -> bool:
    """True when the owner is a live process on this host.

    Owners on other hosts (or in an unknown format) cannot be checked and
    count as gone once the file is old.
    """
    parts = owner.split()
    if len(parts) < 2 or parts[1] != socket.gethostname():
        return False
    try:
        pid = int(parts[0])
    except ValueError:
        return False
    if pid == os.getpid():
        return True
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        return True
    except OSError:
        return False
    return True
