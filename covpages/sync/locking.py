"""Named deployment locks so only one publish runs per target at a time.

Locks are marker files in a shared directory; the file existing means the
lock is held.  They are advisory: nothing stops a process that ignores them,
and a push that lost a race still fails at the remote.
"""

from __future__ import annotations

import abc
import errno
import logging
import os
import re
import threading
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator

from covpages.config import DEFAULT_LOCK_DIR, LOCK_FILE_PREFIX, LOCK_POLL_INTERVAL
from covpages.retry import RetryError, RetryPolicy, constant_backoff

logger = logging.getLogger(__name__)

_UNSAFE_CHARS = re.compile(r"[^A-Za-z0-9_.-]")


class LockTimeoutError(TimeoutError):
    """Raised when a lock could not be acquired within the timeout."""


class _LockHeld(Exception):
    """Internal: the lock token already exists."""


def lock_file_name(name: str) -> str:
    """Return the filesystem-safe token file name for lock *name*."""
    safe = _UNSAFE_CHARS.sub("-", name).strip(".") or "default"
    return f"{LOCK_FILE_PREFIX}{safe}"


class Locker(abc.ABC):
    """Acquire and release named mutual-exclusion tokens.

    Parameters
    ----------
    lock_dir:
        Directory holding lock tokens.  Defaults to the system temp dir so
        that concurrent CI processes on one machine share it.
    poll_interval:
        Seconds between checks while waiting for a held lock.
    """

    def __init__(
        self,
        lock_dir: str | Path | None = None,
        poll_interval: float = LOCK_POLL_INTERVAL,
    ) -> None:
        self.lock_dir = Path(lock_dir) if lock_dir else DEFAULT_LOCK_DIR
        self.poll_interval = poll_interval

    def lock_path(self, name: str) -> Path:
        """Compute the token path for lock *name*."""
        return self.lock_dir / lock_file_name(name)

    @abc.abstractmethod
    def _try_create(self, path: Path) -> None:
        """Create the token at *path* or raise :class:`_LockHeld`."""

    def acquire(
        self,
        name: str,
        timeout: float,
        *,
        cancel: threading.Event | None = None,
    ) -> Path:
        """Wait until lock *name* is free, then take it.

        Returns the token path.

        Raises
        ------
        LockTimeoutError
            If the lock is still held after *timeout* seconds.
        OperationCancelled
            If *cancel* fires while waiting.
        """
        path = self.lock_path(name)
        path.parent.mkdir(parents=True, exist_ok=True)

        policy = RetryPolicy(
            max_attempts=None,
            backoff=constant_backoff(self.poll_interval),
            timeout=timeout,
        )

        def _attempt(attempt: int) -> None:
            self._try_create(path)

        try:
            policy.run(
                _attempt,
                retry_on=(_LockHeld,),
                cancel=cancel,
                description=f"lock {name!r}",
            )
        except RetryError:
            raise LockTimeoutError(
                f"timeout acquiring deployment lock {name!r} after {timeout:g}s "
                f"({path})"
            ) from None

        logger.info("Acquired lock %s", path.name)
        return path

    def release(self, name: str) -> bool:
        """Delete the token for *name*.

        Returns True if a token was removed; a missing token is not an error.
        """
        path = self.lock_path(name)
        try:
            path.unlink()
        except FileNotFoundError:
            logger.debug("Lock %s already released", path.name)
            return False
        logger.info("Released lock %s", path.name)
        return True

    def is_locked(self, name: str) -> bool:
        """Return True if a token for *name* exists."""
        return self.lock_path(name).exists()

    @contextmanager
    def hold(
        self,
        name: str,
        timeout: float,
        *,
        cancel: threading.Event | None = None,
    ) -> Iterator[Path]:
        """Context manager that acquires *name* and always releases it."""
        path = self.acquire(name, timeout, cancel=cancel)
        try:
            yield path
        finally:
            self.release(name)


class FileLock(Locker):
    """Poll-until-absent-then-create lock.

    There is a window between the existence check and the create in which
    two processes can both win.  Prefer :class:`ExclusiveFileLock` unless the
    lock directory is on a filesystem without reliable exclusive create.
    """

    def _try_create(self, path: Path) -> None:
        if path.exists():
            raise _LockHeld(str(path))
        path.write_text(f"{os.getpid()}\n", encoding="utf-8")


class ExclusiveFileLock(Locker):
    """Lock whose token is created with ``O_CREAT | O_EXCL``.

    Creation and the existence check are one atomic step, so at most one
    caller can succeed per token.
    """

    def _try_create(self, path: Path) -> None:
        try:
            fd = os.open(path, os.O_CREAT | os.O_EXCL | os.O_WRONLY, 0o600)
        except OSError as exc:
            if exc.errno == errno.EEXIST:
                raise _LockHeld(str(path)) from None
            raise
        try:
            os.write(fd, f"{os.getpid()}\n".encode("ascii"))
        finally:
            os.close(fd)


def make_locker(
    strategy: str = "exclusive",
    lock_dir: str | Path | None = None,
    poll_interval: float = LOCK_POLL_INTERVAL,
) -> Locker:
    """Build a locker by strategy name: ``exclusive`` or ``advisory``."""
    if strategy == "exclusive":
        return ExclusiveFileLock(lock_dir, poll_interval)
    if strategy == "advisory":
        return FileLock(lock_dir, poll_interval)
    raise ValueError(f"Unknown lock strategy: {strategy!r}")
