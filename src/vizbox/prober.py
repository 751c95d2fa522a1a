"""Bounded-retry reachability checks against freshly exposed sandboxes."""

from __future__ import annotations

import asyncio
import logging

import httpx

from vizbox.tracker import DeploymentTracker
from vizbox.types import DeploymentStage, VizboxError

logger = logging.getLogger(__name__)

_DEFAULT_ATTEMPTS = 5
_DEFAULT_DELAY = 3.0
_DEFAULT_TIMEOUT = 10.0


class VerificationTimeout(VizboxError):
    """Raised when every reachability attempt failed.

    Args:
        url: The URL being verified.
        attempts: How many attempts were made.
        last_error: Description of the final failure.
    """

    def __init__(self, url: str, attempts: int, last_error: str) -> None:
        self.url = url
        self.attempts = attempts
        self.last_error = last_error
        super().__init__(f"Verification failed after {attempts} attempts: {last_error}")


class VerificationProber:
    """Requests a URL with GET until it answers 2xx or attempts run out.

    Retries use a fixed delay, not exponential backoff.

    Args:
        tracker: Receives one event per attempt and per failure.
        max_attempts: Total attempts before giving up.
        delay: Seconds to sleep between failed attempts.
        timeout: Per-attempt request timeout in seconds.
        http: Shared client; one is created (and owned) when omitted.
    """

    __slots__ = ("_delay", "_http", "_max_attempts", "_owns_http", "_timeout", "_tracker")

    def __init__(
        self,
        tracker: DeploymentTracker | None = None,
        *,
        max_attempts: int = _DEFAULT_ATTEMPTS,
        delay: float = _DEFAULT_DELAY,
        timeout: float = _DEFAULT_TIMEOUT,
        http: httpx.AsyncClient | None = None,
    ) -> None:
        if max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        self._tracker = tracker
        self._max_attempts = max_attempts
        self._delay = delay
        self._timeout = timeout
        self._owns_http = http is None
        self._http = http or httpx.AsyncClient(follow_redirects=True)

    @property
    def max_attempts(self) -> int:
        return self._max_attempts

    def _event(self, tracking_id: str | None, message: str, details: dict) -> None:
        if tracking_id and self._tracker is not None:
            self._tracker.log_event(tracking_id, DeploymentStage.VERIFICATION, message, details)

    async def verify(self, url: str, tracking_id: str | None = None) -> int:
        """Request *url* until it responds with a 2xx status.

        Returns:
            The successful response's status code.

        Raises:
            VerificationTimeout: After ``max_attempts`` failures.
        """
        last_error = "no attempt made"
        for attempt in range(1, self._max_attempts + 1):
            self._event(
                tracking_id,
                f"Verification attempt {attempt}/{self._max_attempts}",
                {"url": url},
            )
            try:
                resp = await self._http.get(url, timeout=self._timeout)
                if resp.is_success:
                    logger.debug("Verified %s on attempt %d (HTTP %d)", url, attempt, resp.status_code)
                    return resp.status_code
                last_error = f"HTTP {resp.status_code}: {resp.reason_phrase}"
            except httpx.HTTPError as exc:
                last_error = str(exc) or type(exc).__name__

            if attempt == self._max_attempts:
                self._event(
                    tracking_id, f"Verification attempt {attempt} failed", {"error": last_error}
                )
                break
            self._event(
                tracking_id,
                f"Verification attempt {attempt} failed, retrying...",
                {"error": last_error, "next_retry_in": f"{self._delay:g}s"},
            )
            await asyncio.sleep(self._delay)

        logger.error(
            "Sandbox verification failed after %d attempts: %s (url=%s)",
            self._max_attempts,
            last_error,
            url,
        )
        raise VerificationTimeout(url, self._max_attempts, last_error)

    async def close(self) -> None:
        if self._owns_http:
            await self._http.aclose()

    def __repr__(self) -> str:
        return f"VerificationProber(max_attempts={self._max_attempts}, delay={self._delay})"
