"""Post-deployment HTTP health checks."""

from __future__ import annotations

import asyncio
import logging

import httpx

from src.release_shared.models import Environment, HealthCheckResult

logger = logging.getLogger(__name__)


class HttpHealthChecker:
    """Polls a deployed URL until it answers with a 2xx status.

    Each attempt is a ``GET`` following redirects.  A non-2xx status or a
    transport error counts as a failed attempt; the checker gives up
    after *retries* attempts, sleeping *retry_delay* seconds between
    them.
    """

    def __init__(
        self,
        timeout: float = 10.0,
        retries: int = 3,
        retry_delay: float = 5.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        if retries < 1:
            raise ValueError("retries must be at least 1")
        self._timeout = timeout
        self._retries = retries
        self._retry_delay = retry_delay
        self._transport = transport

    async def check(self, environment: Environment, url: str) -> HealthCheckResult:
        result = HealthCheckResult(healthy=False, url=url)
        async with httpx.AsyncClient(
            timeout=self._timeout, transport=self._transport, follow_redirects=True
        ) as client:
            for attempt in range(1, self._retries + 1):
                result.attempts = attempt
                try:
                    resp = await client.get(url)
                    result.status_code = resp.status_code
                    if resp.is_success:
                        result.healthy = True
                        result.error = ""
                        logger.info(
                            "Health check for %s passed: %s HTTP %d (attempt %d)",
                            environment.value, url, resp.status_code, attempt,
                        )
                        return result
                    result.error = f"HTTP {resp.status_code}"
                except httpx.HTTPError as exc:
                    result.status_code = None
                    result.error = str(exc) or type(exc).__name__

                logger.warning(
                    "Health check for %s attempt %d/%d failed: %s",
                    environment.value, attempt, self._retries, result.error,
                )
                if attempt < self._retries:
                    await asyncio.sleep(self._retry_delay)

        logger.error(
            "Health check for %s failed after %d attempts: %s",
            environment.value, result.attempts, result.error,
        )
        return result
