"""Tests for VerificationProber."""

from __future__ import annotations

from unittest.mock import AsyncMock, patch

import httpx
import pytest

from vizbox.prober import VerificationProber, VerificationTimeout
from vizbox.tracker import DeploymentTracker
from vizbox.types import DeploymentStage

URL = "http://sandbox.test"

# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _flaky(failures: int, *, status: int = 503) -> tuple[httpx.AsyncClient, list[int]]:
    """Client that answers *status* for the first *failures* requests, then 200."""
    calls: list[int] = []

    def handler(request: httpx.Request) -> httpx.Response:
        calls.append(1)
        if len(calls) <= failures:
            return httpx.Response(status)
        return httpx.Response(200, text="ok")

    return httpx.AsyncClient(transport=httpx.MockTransport(handler)), calls


def _messages(tracker: DeploymentTracker, tracking_id: str) -> list[str]:
    log = tracker.get_log(tracking_id)
    assert log is not None
    return [e.message for e in log.events if e.stage == DeploymentStage.VERIFICATION]


# ---------------------------------------------------------------------------
# TestVerify
# ---------------------------------------------------------------------------


class TestVerify:
    async def test_first_attempt_succeeds(self) -> None:
        http, calls = _flaky(0)
        prober = VerificationProber(delay=0, http=http)
        assert await prober.verify(URL) == 200
        assert len(calls) == 1

    async def test_succeeds_on_third_attempt(self) -> None:
        http, calls = _flaky(2)
        tracker = DeploymentTracker()
        tracker.start("viz")
        prober = VerificationProber(tracker, max_attempts=5, delay=0, http=http)

        assert await prober.verify(URL, "viz") == 200
        assert len(calls) == 3
        assert _messages(tracker, "viz") == [
            "Verification attempt 1/5",
            "Verification attempt 1 failed, retrying...",
            "Verification attempt 2/5",
            "Verification attempt 2 failed, retrying...",
            "Verification attempt 3/5",
        ]

    async def test_gives_up_after_max_attempts(self) -> None:
        http, calls = _flaky(100, status=502)
        tracker = DeploymentTracker()
        tracker.start("viz")
        prober = VerificationProber(tracker, max_attempts=5, delay=0, http=http)

        with pytest.raises(VerificationTimeout, match="after 5 attempts") as exc_info:
            await prober.verify(URL, "viz")

        assert len(calls) == 5
        assert exc_info.value.attempts == 5
        assert exc_info.value.url == URL
        assert "HTTP 502" in exc_info.value.last_error
        assert _messages(tracker, "viz")[-1] == "Verification attempt 5 failed"

    async def test_transport_errors_are_retried(self) -> None:
        calls: list[int] = []

        def handler(request: httpx.Request) -> httpx.Response:
            calls.append(1)
            if len(calls) == 1:
                raise httpx.ConnectError("connection refused", request=request)
            return httpx.Response(204)

        http = httpx.AsyncClient(transport=httpx.MockTransport(handler))
        prober = VerificationProber(delay=0, http=http)
        assert await prober.verify(URL) == 204

    async def test_sleeps_only_between_attempts(self) -> None:
        http, _ = _flaky(100)
        prober = VerificationProber(max_attempts=3, delay=3.0, http=http)
        with (
            patch("vizbox.prober.asyncio.sleep", new_callable=AsyncMock) as sleep,
            pytest.raises(VerificationTimeout),
        ):
            await prober.verify(URL)
        assert sleep.await_count == 2
        sleep.assert_awaited_with(3.0)

    async def test_without_tracking_id_no_events(self) -> None:
        http, _ = _flaky(1)
        tracker = DeploymentTracker()
        tracker.start("viz")
        prober = VerificationProber(tracker, delay=0, http=http)
        await prober.verify(URL)
        assert _messages(tracker, "viz") == []


class TestInit:
    def test_rejects_zero_attempts(self) -> None:
        with pytest.raises(ValueError, match="at least 1"):
            VerificationProber(max_attempts=0)

    async def test_close_leaves_injected_client_open(self) -> None:
        http, _ = _flaky(0)
        prober = VerificationProber(http=http)
        await prober.close()
        assert not http.is_closed
        await http.aclose()

    async def test_close_owned_client(self) -> None:
        prober = VerificationProber()
        await prober.close()
        assert prober._http.is_closed
