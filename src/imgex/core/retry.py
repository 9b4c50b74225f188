"""Bounded exponential backoff for transient registry failures."""

import asyncio
import logging
import random
from typing import Awaitable, Callable, Optional, TypeVar

import aiohttp

from ..exceptions import NetworkTransientError
from .config import ExportConfig

logger = logging.getLogger(__name__)

T = TypeVar("T")


class TransientError(Exception):
    """A failure that may succeed when tried again (5xx, 429, dropped connection)."""


RETRYABLE_EXCEPTIONS = (TransientError, aiohttp.ClientError, asyncio.TimeoutError)


class RetryPolicy:
    """Retry policy with exponential backoff and jitter.

    Retry timeline (default config):
    - Attempt 1: immediate
    - Attempt 2: ~0.5s delay
    - Attempt 3: ~1s delay

    Only transient failures are retried; every other exception propagates on
    first occurrence. When the attempts run out a NetworkTransientError naming
    the last cause is raised.
    """

    def __init__(self, config: Optional[ExportConfig] = None) -> None:
        config = config or ExportConfig()
        self.max_attempts = max(1, config.max_attempts)
        self.backoff_base = config.backoff_base
        self.backoff_max = config.backoff_max

    def calculate_delay(self, attempt: int) -> float:
        """Delay before the retry following ``attempt`` (0-indexed), ±25% jitter."""
        delay = min(self.backoff_base * (2**attempt), self.backoff_max)
        if delay <= 0:
            return 0.0
        jitter = delay * 0.25
        return max(0.0, delay + random.uniform(-jitter, jitter))

    async def run(self, func: Callable[[], Awaitable[T]], description: str) -> T:
        """Await ``func()`` until it succeeds or the attempts are spent."""
        for attempt in range(self.max_attempts):
            try:
                return await func()
            except RETRYABLE_EXCEPTIONS as e:
                reason = str(e) or type(e).__name__
                if attempt + 1 >= self.max_attempts:
                    logger.warning(
                        f"{description}: giving up after {self.max_attempts} attempts: {reason}"
                    )
                    raise NetworkTransientError(
                        f"{description} failed after {self.max_attempts} attempts: {reason}"
                    ) from e
                delay = self.calculate_delay(attempt)
                logger.warning(
                    f"{description}: attempt {attempt + 1}/{self.max_attempts} failed "
                    f"({reason}), retrying in {delay:.2f}s"
                )
                await asyncio.sleep(delay)
        raise RuntimeError("Retry loop exited without result")
