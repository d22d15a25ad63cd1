"""Retry-with-backoff policy shared by push retries and lock polling."""

from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass, field
from typing import Callable, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")


class OperationCancelled(Exception):
    """Raised when a caller's cancel signal fires during a long-running call."""


class RetryError(Exception):
    """Raised when every attempt allowed by a :class:`RetryPolicy` failed."""

    def __init__(self, attempts: int, last_error: BaseException) -> None:
        super().__init__(f"gave up after {attempts} attempt(s): {last_error}")
        self.attempts = attempts
        self.last_error = last_error


def linear_backoff(attempt: int) -> float:
    """Sleep *attempt* seconds after the given (1-based) failed attempt."""
    return float(attempt)


def constant_backoff(delay: float) -> Callable[[int], float]:
    """Return a backoff function that always waits *delay* seconds."""

    def _backoff(attempt: int) -> float:
        return delay

    return _backoff


def check_cancelled(cancel: threading.Event | None, what: str = "operation") -> None:
    """Raise :class:`OperationCancelled` if *cancel* has fired."""
    if cancel is not None and cancel.is_set():
        raise OperationCancelled(f"{what} cancelled")


@dataclass(frozen=True)
class RetryPolicy:
    """How many times to try an operation and how long to wait in between.

    Parameters
    ----------
    max_attempts:
        Total number of attempts, or *None* for no limit (then *timeout*
        must bound the loop).
    backoff:
        Maps the 1-based number of the attempt that just failed to the
        delay in seconds before the next one.
    timeout:
        Overall deadline in seconds measured from the first attempt.
    sleep:
        Used for waits when no cancel signal is given.
    clock:
        Monotonic clock used for the deadline.
    """

    max_attempts: int | None = 3
    backoff: Callable[[int], float] = linear_backoff
    timeout: float | None = None
    sleep: Callable[[float], None] = field(default=time.sleep, repr=False)
    clock: Callable[[], float] = field(default=time.monotonic, repr=False)

    def __post_init__(self) -> None:
        if self.max_attempts is None and self.timeout is None:
            raise ValueError("RetryPolicy needs max_attempts or timeout")
        if self.max_attempts is not None and self.max_attempts < 1:
            raise ValueError(f"max_attempts must be >= 1 (got {self.max_attempts})")
        if self.timeout is not None and self.timeout < 0:
            raise ValueError(f"timeout must be >= 0 (got {self.timeout})")

    def run(
        self,
        operation: Callable[[int], T],
        *,
        retry_on: tuple[type[BaseException], ...] = (Exception,),
        cancel: threading.Event | None = None,
        description: str = "operation",
    ) -> T:
        """Call ``operation(attempt)`` until it returns without raising.

        Exceptions outside *retry_on* propagate immediately.  When the
        attempts or the deadline run out, :class:`RetryError` is raised from
        the last failure.  *cancel* is checked before every attempt and
        interrupts the wait between attempts.
        """
        deadline = None if self.timeout is None else self.clock() + self.timeout
        attempt = 0

        while True:
            check_cancelled(cancel, description)
            attempt += 1
            try:
                return operation(attempt)
            except retry_on as exc:
                if self.max_attempts is not None and attempt >= self.max_attempts:
                    raise RetryError(attempt, exc) from exc

                delay = max(self.backoff(attempt), 0.0)
                if deadline is not None:
                    remaining = deadline - self.clock()
                    if remaining <= 0:
                        raise RetryError(attempt, exc) from exc
                    delay = min(delay, remaining)

                logger.debug(
                    "%s attempt %d failed (%s); retrying in %.2fs",
                    description, attempt, exc, delay,
                )
                self._pause(delay, cancel, description)

    def _pause(
        self,
        delay: float,
        cancel: threading.Event | None,
        description: str,
    ) -> None:
        if delay <= 0:
            return
        if cancel is None:
            self.sleep(delay)
        elif cancel.wait(delay):
            raise OperationCancelled(f"{description} cancelled")
