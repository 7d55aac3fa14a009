"""
Cross-process mutex over the shared registry files.

A lock is a sentinel file under <root>/.locks/ created with O_CREAT | O_EXCL,
so two processes can never both believe they hold it. Waiters poll with a
short sleep. A sentinel older than the staleness threshold is assumed to
belong to a crashed owner and is removed once the wait times out. Removal
renames the sentinel aside first, so two waiters reclaiming at once never
delete the sentinel one of them has just created.
"""

from __future__ import annotations

import logging
import os
import secrets
import time
from contextlib import contextmanager
from pathlib import Path
from typing import Callable, Iterator

from .errors import LockTimeoutError

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT = 5.0
DEFAULT_POLL_INTERVAL = 0.01
DEFAULT_STALE_AFTER = 30.0


class FileMutex:
    """
    Named, timeout-bounded lock backed by an exclusively created file.

    Ownership is tracked per instance with a random token written into the
    sentinel, so release() never deletes a sentinel some other process
    created after ours was reclaimed.
    """

    def __init__(
        self,
        lock_dir: Path | str,
        name: str,
        timeout: float = DEFAULT_TIMEOUT,
        poll_interval: float = DEFAULT_POLL_INTERVAL,
        stale_after: float = DEFAULT_STALE_AFTER,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
    ):
        """
        Initialize the mutex.

        Args:
            lock_dir: Directory holding sentinel files
            name: Lock name; the sentinel is <lock_dir>/<name>.lock
            timeout: Seconds to wait before giving up
            poll_interval: Seconds between acquisition attempts
            stale_after: Sentinel age in seconds after which it may be reclaimed
        """
        self.lock_dir = Path(lock_dir)
        self.name = name
        self.timeout = timeout
        self.poll_interval = poll_interval
        self.stale_after = stale_after
        self._clock = clock
        self._sleep = sleep
        self._token: str | None = None

    @property
    def path(self) -> Path:
        return self.lock_dir / f"{self.name}.lock"

    @property
    def held(self) -> bool:
        return self._token is not None

    def _try_create(self) -> bool:
        token = secrets.token_hex(8)
        try:
            fd = os.open(self.path, os.O_CREAT | os.O_EXCL | os.O_WRONLY, 0o644)
        except FileExistsError:
            return False
        try:
            os.write(fd, f"{os.getpid()} {token}\n".encode("ascii"))
        finally:
            os.close(fd)
        self._token = token
        return True

    def sentinel_age(self) -> float | None:
        """Seconds since the sentinel was last modified, or None if absent."""
        identity = self._sentinel_identity(self.path)
        if identity is None:
            return None
        return time.time() - identity[1] / 1e9

    def _sentinel_identity(self, path: Path) -> tuple[int, int, bytes] | None:
        """Inode, mtime and content of a sentinel; unique to one creation."""
        try:
            stat = path.stat()
            return stat.st_ino, stat.st_mtime_ns, path.read_bytes()
        except FileNotFoundError:
            return None

    def _reclaim(self, stale: tuple[int, int, bytes]) -> bool:
        """
        Remove the sentinel identified by stale, and nothing newer.

        The sentinel is first renamed aside, which only one waiter can do.
        If what was moved is not the stale sentinel, another waiter already
        reclaimed it and created its own, so that one is linked back.
        """
        aside = self.path.with_name(f"{self.path.name}.stale-{secrets.token_hex(4)}")
        try:
            os.rename(self.path, aside)
        except FileNotFoundError:
            return False
        try:
            if self._sentinel_identity(aside) == stale:
                return True
            try:
                os.link(aside, self.path)
            except FileExistsError:
                logger.warning(f"Lock '{self.name}' changed hands while it was being reclaimed")
            return False
        finally:
            aside.unlink(missing_ok=True)

    def acquire(self) -> None:
        """
        Acquire the lock.

        Raises:
            LockTimeoutError: If the lock is held by a live owner past the timeout
            RuntimeError: If this instance already holds the lock
        """
        if self._token is not None:
            raise RuntimeError(f"Lock '{self.name}' is already held by this instance")

        self.lock_dir.mkdir(parents=True, exist_ok=True)
        deadline = self._clock() + self.timeout

        while True:
            if self._try_create():
                return
            if self._clock() >= deadline:
                break
            self._sleep(self.poll_interval)

        identity = self._sentinel_identity(self.path)
        if identity is None:
            # Owner released between our last attempt and the deadline.
            if self._try_create():
                return
        else:
            age = time.time() - identity[1] / 1e9
            if age > self.stale_after:
                if self._reclaim(identity):
                    logger.warning(f"Reclaimed stale lock '{self.name}' (age {age:.1f}s)")
                if self._try_create():
                    return

        raise LockTimeoutError(self.name, self.timeout)

    def release(self) -> None:
        """Release the lock if this instance holds it."""
        token = self._token
        if token is None:
            return
        self._token = None
        try:
            content = self.path.read_text(encoding="ascii", errors="replace")
        except FileNotFoundError:
            logger.warning(f"Lock '{self.name}' vanished before release")
            return
        if token not in content:
            logger.warning(f"Lock '{self.name}' was reclaimed by another process; not removing it")
            return
        try:
            self.path.unlink()
        except FileNotFoundError:
            pass

    @contextmanager
    def hold(self) -> Iterator["FileMutex"]:
        """Hold the lock for the duration of a with-block."""
        self.acquire()
        try:
            yield self
        finally:
            self.release()

    def __enter__(self) -> "FileMutex":
        self.acquire()
        return self

    def __exit__(self, *exc_info) -> None:
        self.release()


__all__ = [
    "DEFAULT_POLL_INTERVAL",
    "DEFAULT_STALE_AFTER",
    "DEFAULT_TIMEOUT",
    "FileMutex",
]
