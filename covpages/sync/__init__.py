"""Deployment locks — one publish per target at a time."""

from covpages.sync.locking import (
    ExclusiveFileLock,
    FileLock,
    Locker,
    LockTimeoutError,
    make_locker,
)

__all__ = [
    "ExclusiveFileLock",
    "FileLock",
    "LockTimeoutError",
    "Locker",
    "make_locker",
]
