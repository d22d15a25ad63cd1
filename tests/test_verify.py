"""Tests for post-deployment URL verification.

No network access: every test injects an opener.
"""

from __future__ import annotations

import threading
import urllib.error

import pytest

from covpages.deployment.verify import URLVerifier, VerificationError, VerificationReport
from covpages.retry import OperationCancelled


class _Response:
    def __init__(self, status: int) -> None:
        self.status = status

    def __enter__(self) -> _Response:
        return self

    def __exit__(self, *exc) -> None:
        return None


class _Opener:
    """Answer requests from a URL -> status (or exception) table."""

    def __init__(self, answers: dict) -> None:
        self.answers = answers
        self.requests: list[tuple[str, str, float]] = []

    def __call__(self, req, timeout=None):
        self.requests.append((req.full_url, req.get_method(), timeout))
        answer = self.answers[req.full_url]
        if isinstance(answer, Exception):
            raise answer
        return _Response(answer)


class TestURLVerifier:
    def test_all_reachable(self):
        opener = _Opener({"https://a/x": 200, "https://a/y": 200})
        verifier = URLVerifier(timeout=7, propagation_delay=0, opener=opener)

        report = verifier.verify(["https://a/x", "https://a/y"])

        assert report.status == "verified"
        assert report.passed
        assert opener.requests == [("https://a/x", "HEAD", 7), ("https://a/y", "HEAD", 7)]

    def test_http_error_fails_check(self):
        error = urllib.error.HTTPError("https://a/x", 404, "Not Found", {}, None)
        opener = _Opener({"https://a/x": error, "https://a/y": 200})

        report = URLVerifier(propagation_delay=0, opener=opener).verify(["https://a/x", "https://a/y"])

        assert report.status == "failed"
        assert [c.url for c in report.failures] == ["https://a/x"]
        assert report.failures[0].status_code == 404

    def test_non_200_status_is_not_success(self):
        opener = _Opener({"https://a/x": 204})
        report = URLVerifier(propagation_delay=0, opener=opener).verify(["https://a/x"])
        assert not report.passed

    def test_unreachable_host(self):
        opener = _Opener({"https://a/x": urllib.error.URLError("name resolution failed")})
        check = URLVerifier(propagation_delay=0, opener=opener).check_url("https://a/x")

        assert not check.passed
        assert check.status_code is None
        assert "failed to access URL" in check.message

    def test_timeout_override(self):
        opener = _Opener({"https://a/x": 200})
        URLVerifier(timeout=30, propagation_delay=0, opener=opener).verify(["https://a/x"], timeout=2)
        assert opener.requests[0][2] == 2

    def test_no_urls_is_skipped(self):
        report = URLVerifier(propagation_delay=0, opener=_Opener({})).verify(["", ""])
        assert report.status == "skipped"
        assert report.passed

    def test_cancel_during_propagation_delay(self):
        cancel = threading.Event()
        cancel.set()
        opener = _Opener({"https://a/x": 200})

        with pytest.raises(OperationCancelled):
            URLVerifier(propagation_delay=60, opener=opener).verify(["https://a/x"], cancel=cancel)
        assert opener.requests == []


class TestVerificationError:
    def test_message_lists_failures(self):
        opener = _Opener({"https://a/x": urllib.error.URLError("down")})
        report = URLVerifier(propagation_delay=0, opener=opener).verify(["https://a/x"])

        err = VerificationError(report)
        assert "https://a/x" in str(err)
        assert err.report is report

    def test_empty_report_passes(self):
        assert VerificationReport().passed
