"""Reachability check for a candidate tunnel URL.

A freshly printed quick-tunnel URL often answers with 502/530 for a few
seconds until the edge has registered the connection, so the probe is
retried a bounded number of times before the URL is rejected.
"""
from __future__ import annotations

import asyncio
import logging

import aiohttp

logger = logging.getLogger(__name__)

DEFAULT_ATTEMPTS = 5
DEFAULT_BACKOFF = 2.0


class AccessibilityVerifier:
    """Retried HEAD probes against a URL."""

    def __init__(
        self,
        max_attempts: int = DEFAULT_ATTEMPTS,
        backoff: float = DEFAULT_BACKOFF,
        request_timeout: float = 5.0,
    ) -> None:
        self.max_attempts = max_attempts
        self.backoff = backoff
        self.request_timeout = request_timeout

    async def confirm(
        self,
        url: str,
        max_attempts: int | None = None,
        backoff: float | None = None,
    ) -> bool:
        """Return True on the first 2xx response, False once attempts run out."""
        attempts = self.max_attempts if max_attempts is None else max_attempts
        delay = self.backoff if backoff is None else backoff
        timeout = aiohttp.ClientTimeout(total=self.request_timeout)

        logger.info("Testing accessibility: %s", url)
        async with aiohttp.ClientSession(timeout=timeout) as session:
            for attempt in range(1, attempts + 1):
                if await self._probe(session, url, attempt):
                    logger.info("URL is accessible: %s", url)
                    return True
                if attempt < attempts:
                    await asyncio.sleep(delay)

        logger.warning("URL not accessible after %d attempt(s): %s", attempts, url)
        return False

    async def _probe(self, session: aiohttp.ClientSession, url: str, attempt: int) -> bool:
        try:
            async with session.head(url, allow_redirects=True) as resp:
                if 200 <= resp.status < 300:
                    return True
                logger.info("Attempt %d: %s answered HTTP %d", attempt, url, resp.status)
        except (aiohttp.ClientError, asyncio.TimeoutError, OSError) as e:
            logger.info("Attempt %d: %s not reachable: %s", attempt, url, e)
        return False
