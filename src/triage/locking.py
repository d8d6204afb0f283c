"""Exclusive run lock shared by manual and scheduled invocations.

The lock is a file created with ``O_EXCL`` under the workspace state
directory. Acquisition waits a bounded time; the holder refreshes the file's
modification time while working so that a lock left behind by a crashed
process can be recognised as stale and broken.
"""

from __future__ import annotations

import logging
import os
import time
import uuid
from pathlib import Path
from typing import Callable, Optional, Tuple

DEFAULT_POLL_INTERVAL_SECONDS = 0.2
DEFAULT_STALE_AFTER_SECONDS = 15 * 60


class RunLockTimeout(TimeoutError):
    """Raised when the run lock is not acquired within the allotted time."""


class RunLock:
    """Context manager guarding one invocation of the batch engine.

    Parameters
    ----------
    path:
        Lock file location.
    timeout:
        Maximum seconds to wait for the lock.
    poll_interval:
        Delay between acquisition attempts.
    stale_after:
        Age in seconds after which an unrefreshed lock file is broken.
    """

    def __init__(
        self,
        path: Path,
        *,
        timeout: float,
        poll_interval: float = DEFAULT_POLL_INTERVAL_SECONDS,
        stale_after: float = DEFAULT_STALE_AFTER_SECONDS,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.path = Path(path)
        self.timeout = float(timeout)
        self.poll_interval = float(poll_interval)
        self.stale_after = float(stale_after)
        self._sleep = sleep
        self._held = False

    @property
    def held(self) -> bool:
        return self._held

    def _try_create(self) -> bool:
        try:
            fd = os.open(self.path, os.O_CREAT | os.O_EXCL | os.O_WRONLY)
        except FileExistsError:
            return False
        with os.fdopen(fd, "w", encoding="utf-8") as handle:
            handle.write(f"{os.getpid()} {time.time():.3f}\n")
        return True

    def _observe(self) -> Optional[Tuple[int, float]]:
        try:
            stat = self.path.stat()
        except FileNotFoundError:
            return None
        return stat.st_ino, stat.st_mtime

    def _discard_if_unchanged(self, observed: Tuple[int, float]) -> bool:
        """Remove the lock file only if it is still the one seen as stale.

        The file is first renamed aside so no other process can create or
        refresh the lock between the check and the removal. A file that was
        replaced or refreshed in the meantime is put back.
        """

        aside = self.path.with_name(f"{self.path.name}.stale-{uuid.uuid4().hex}")
        try:
            os.rename(self.path, aside)
        except FileNotFoundError:
            return True
        try:
            stat = aside.stat()
            if (stat.st_ino, stat.st_mtime) == observed:
                return True
            try:
                os.link(aside, self.path)
            except FileExistsError:
                logging.warning(
                    "Run lock %s was re-created while breaking a stale lock", self.path
                )
            return False
        finally:
            aside.unlink(missing_ok=True)

    def _break_if_stale(self) -> bool:
        observed = self._observe()
        if observed is None:
            return True
        age = time.time() - observed[1]
        if age < self.stale_after:
            return False
        logging.warning("Breaking stale run lock %s (age %.0fs)", self.path, age)
        return self._discard_if_unchanged(observed)

    def acquire(self) -> None:
        """Create the lock file, waiting up to ``timeout`` seconds.

        Raises
        ------
        RunLockTimeout
            If another holder keeps the lock for the whole wait.
        """

        self.path.parent.mkdir(parents=True, exist_ok=True)
        deadline = time.monotonic() + self.timeout
        while True:
            if self._try_create():
                self._held = True
                return
            if self._break_if_stale():
                continue
            if time.monotonic() >= deadline:
                raise RunLockTimeout(
                    f"Run lock {self.path} is held by another invocation."
                )
            self._sleep(self.poll_interval)

    def refresh(self) -> None:
        """Update the lock file's timestamp so it is not considered stale."""

        if not self._held:
            return
        try:
            os.utime(self.path, None)
        except FileNotFoundError:
            logging.warning("Run lock %s disappeared while held", self.path)

    def release(self) -> None:
        if not self._held:
            return
        self._held = False
        self.path.unlink(missing_ok=True)

    def __enter__(self) -> "RunLock":
        self.acquire()
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.release()
