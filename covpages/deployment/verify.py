"""URLVerifier — best-effort check that published URLs respond."""

from __future__ import annotations

import logging
import threading
import time
import urllib.error
import urllib.request
from typing import Any, Callable

from pydantic import BaseModel, Field

from covpages.config import DEFAULT_PROPAGATION_DELAY, DEFAULT_VERIFICATION_TIMEOUT
from covpages.retry import OperationCancelled

logger = logging.getLogger(__name__)


class CheckResult(BaseModel):
    """Result of checking a single URL."""

    url: str = ""
    passed: bool = True
    status_code: int | None = None
    message: str = ""


class VerificationReport(BaseModel):
    """Aggregate verification report."""

    status: str = "verified"  # verified, failed, skipped
    checks: list[CheckResult] = Field(default_factory=list)

    @property
    def passed(self) -> bool:
        return self.status != "failed"

    @property
    def failures(self) -> list[CheckResult]:
        return [c for c in self.checks if not c.passed]


class VerificationError(Exception):
    """Raised when one or more deployment URLs are not reachable."""

    def __init__(self, report: VerificationReport) -> None:
        details = "; ".join(f"{c.url}: {c.message}" for c in report.failures)
        super().__init__(f"deployment URL(s) not accessible: {details}")
        self.report = report


class URLVerifier:
    """Issue ``HEAD`` requests against deployment URLs.

    Parameters
    ----------
    timeout:
        Per-request timeout in seconds.
    propagation_delay:
        Seconds to wait before the first request, giving the static host
        time to publish the new commit.
    opener:
        Callable compatible with :func:`urllib.request.urlopen`.
    """

    def __init__(
        self,
        *,
        timeout: float = DEFAULT_VERIFICATION_TIMEOUT,
        propagation_delay: float = DEFAULT_PROPAGATION_DELAY,
        opener: Callable[..., Any] | None = None,
    ) -> None:
        self.timeout = timeout
        self.propagation_delay = propagation_delay
        self._opener = opener or urllib.request.urlopen

    def check_url(self, url: str, timeout: float | None = None) -> CheckResult:
        """Return a :class:`CheckResult` for one URL; never raises for HTTP errors."""
        req = urllib.request.Request(url, method="HEAD")
        try:
            with self._opener(req, timeout=timeout or self.timeout) as resp:
                code = resp.status
        except urllib.error.HTTPError as exc:
            code = exc.code
        except (urllib.error.URLError, OSError, TimeoutError) as exc:
            return CheckResult(url=url, passed=False, message=f"failed to access URL: {exc}")

        if code != 200:
            return CheckResult(
                url=url, passed=False, status_code=code,
                message=f"URL returned non-success status: {code}",
            )
        return CheckResult(url=url, passed=True, status_code=code, message="OK")

    def verify(
        self,
        urls: list[str],
        *,
        timeout: float | None = None,
        cancel: threading.Event | None = None,
    ) -> VerificationReport:
        """Check every URL in *urls* and return a report.

        Waits ``propagation_delay`` seconds first; *cancel* interrupts the
        wait with :class:`OperationCancelled`.
        """
        urls = [u for u in urls if u]
        if not urls:
            return VerificationReport(status="skipped")

        if self.propagation_delay > 0:
            if cancel is None:
                time.sleep(self.propagation_delay)
            elif cancel.wait(self.propagation_delay):
                raise OperationCancelled("verification cancelled")

        checks = [self.check_url(url, timeout) for url in urls]
        for check in checks:
            if check.passed:
                logger.debug("Verified %s", check.url)
            else:
                logger.warning("Verification failed for %s: %s", check.url, check.message)

        status = "verified" if all(c.passed for c in checks) else "failed"
        return VerificationReport(status=status, checks=checks)
