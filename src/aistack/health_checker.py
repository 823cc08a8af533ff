"""
HTTP liveness checking.

Every failure mode (non-2xx, refused connection, DNS error, timeout) collapses
to "not healthy": the remediation is the same either way, so callers never
need to tell them apart.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Optional

import aiohttp
from aiohttp import ClientError, ClientTimeout

from .waits import pause, raise_if_cancelled

logger = logging.getLogger(__name__)

DEFAULT_HEALTH_TIMEOUT_SECONDS = 5.0
RETRY_BACKOFF_SECONDS = 1.0
DEFAULT_POLL_INTERVAL_SECONDS = 2.0
# Floor for a probe's own timeout near the end of a readiness window
_MIN_PROBE_TIMEOUT_SECONDS = 0.5

HTTP_ERRORS = (ClientError, asyncio.TimeoutError, OSError, ValueError)


@dataclass(frozen=True)
class ReadinessResult:
    """Outcome of a wait-for-ready loop."""

    ready: bool
    elapsed_seconds: float
    attempts: int


class HealthChecker:
    """Probes a service's liveness endpoint."""

    def __init__(
        self,
        timeout_seconds: float = DEFAULT_HEALTH_TIMEOUT_SECONDS,
        *,
        retry_backoff_seconds: float = RETRY_BACKOFF_SECONDS,
    ):
        """
        Initialize HTTP health checker.

        Args:
            timeout_seconds: Timeout for a single GET
            retry_backoff_seconds: Fixed delay between quick-probe attempts
        """
        self.timeout_seconds = timeout_seconds
        self.retry_backoff_seconds = retry_backoff_seconds

    async def check(self, url: str, timeout: Optional[float] = None) -> bool:
        """
        Issue one GET and classify the response.

        Args:
            url: Liveness URL
            timeout: Overrides the checker's default timeout

        Returns:
            True on HTTP 2xx, False on anything else
        """
        effective_timeout = self.timeout_seconds if timeout is None else timeout
        try:
            async with aiohttp.ClientSession() as session:
                async with session.get(url, timeout=ClientTimeout(total=effective_timeout)) as response:
                    healthy = 200 <= response.status < 300
                    if not healthy:
                        logger.debug("Health check %s returned HTTP %s", url, response.status)
                    return healthy
        except HTTP_ERRORS as exc:
            logger.debug("Health check %s failed: %s", url, type(exc).__name__)
            return False

    async def quick_probe(
        self,
        url: str,
        *,
        retries: int = 0,
        timeout: Optional[float] = None,
        cancel_event: Optional[asyncio.Event] = None,
    ) -> bool:
        """
        Probe up to ``retries + 1`` times with a fixed backoff between attempts.

        Returns:
            True as soon as one attempt succeeds
        """
        for attempt in range(retries + 1):
            raise_if_cancelled(cancel_event, "health probe")
            if await self.check(url, timeout):
                return True
            if attempt < retries:
                await pause(self.retry_backoff_seconds, cancel_event, "health probe")
        return False

    async def wait_until_ready(
        self,
        url: str,
        total_timeout: float,
        poll_interval: float = DEFAULT_POLL_INTERVAL_SECONDS,
        cancel_event: Optional[asyncio.Event] = None,
    ) -> ReadinessResult:
        """
        Poll until the endpoint answers or ``total_timeout`` elapses.

        Pauses never run past the deadline, so a target that never becomes
        healthy returns within ``total_timeout + poll_interval``.

        Args:
            url: Liveness URL
            total_timeout: Seconds to keep polling
            poll_interval: Seconds between probes
            cancel_event: Setting this event aborts the wait immediately

        Returns:
            ReadinessResult describing whether and when the endpoint answered

        Raises:
            OperationCancelledError: If cancel_event is set during the wait
        """
        loop = asyncio.get_running_loop()
        started = loop.time()
        attempts = 0
        while True:
            raise_if_cancelled(cancel_event, "wait for ready")
            attempts += 1
            remaining = total_timeout - (loop.time() - started)
            probe_timeout = min(self.timeout_seconds, max(remaining, _MIN_PROBE_TIMEOUT_SECONDS))
            if await self.check(url, probe_timeout):
                return ReadinessResult(ready=True, elapsed_seconds=loop.time() - started, attempts=attempts)

            elapsed = loop.time() - started
            if elapsed >= total_timeout:
                return ReadinessResult(ready=False, elapsed_seconds=elapsed, attempts=attempts)
            await pause(min(poll_interval, total_timeout - elapsed), cancel_event, "wait for ready")

    async def fetch_json(self, url: str, timeout: Optional[float] = None) -> Optional[Any]:
        """Return the decoded JSON body of a 2xx response, or None."""
        effective_timeout = self.timeout_seconds if timeout is None else timeout
        try:
            async with aiohttp.ClientSession() as session:
                async with session.get(url, timeout=ClientTimeout(total=effective_timeout)) as response:
                    if not 200 <= response.status < 300:
                        return None
                    return await response.json(content_type=None)
        except HTTP_ERRORS as exc:
            logger.debug("Fetching %s failed: %s", url, type(exc).__name__)
            return None
