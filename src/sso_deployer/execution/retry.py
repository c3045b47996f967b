"""Bounded exponential backoff for throttled AWS calls."""

from __future__ import annotations

import asyncio
import logging
import random
from collections.abc import Awaitable, Callable
from typing import TypeVar

from sso_deployer.config import ExecutionSettings
from sso_deployer.execution.errors import is_throttling_error

logger = logging.getLogger(__name__)

T = TypeVar("T")

JITTER_LOW = 0.85
JITTER_HIGH = 1.15


class RetryExecutor:
    """Retry a single remote call while it keeps failing with throttling errors.

    ``max_retries`` bounds the total number of attempts. Before each retry the
    delay is doubled, scaled by a jitter factor drawn from
    ``[JITTER_LOW, JITTER_HIGH]`` and capped at ``max_delay``. Errors that are
    not throttling signals propagate from the first attempt without sleeping.
    """

    def __init__(
        self,
        max_retries: int = 5,
        initial_delay: float = 1.0,
        max_delay: float = 30.0,
        *,
        sleep: Callable[[float], Awaitable[object]] = asyncio.sleep,
        rng: random.Random | None = None,
    ) -> None:
        if max_retries < 1:
            raise ValueError("max_retries must be at least 1")
        if initial_delay <= 0 or max_delay <= 0:
            raise ValueError("delays must be positive")
        self._max_retries = max_retries
        self._initial_delay = initial_delay
        self._max_delay = max_delay
        self._sleep = sleep
        self._rng = rng or random.Random()

    @classmethod
    def from_settings(cls, settings: ExecutionSettings) -> "RetryExecutor":
        return cls(
            max_retries=settings.max_retries,
            initial_delay=settings.initial_delay_seconds,
            max_delay=settings.max_delay_seconds,
        )

    @property
    def max_retries(self) -> int:
        return self._max_retries

    @property
    def max_delay(self) -> float:
        return self._max_delay

    def next_delay(self, previous: float) -> float:
        jitter = self._rng.uniform(JITTER_LOW, JITTER_HIGH)
        return min(previous * 2 * jitter, self._max_delay)

    async def run(self, call: Callable[[], Awaitable[T]], *, description: str = "AWS call") -> T:
        attempt = 0
        delay = self._initial_delay
        while True:
            try:
                return await call()
            except Exception as exc:
                attempt += 1
                if attempt >= self._max_retries or not is_throttling_error(exc):
                    raise
                delay = self.next_delay(delay)
                logger.warning(
                    "Throttling detected on %s. Retry %d/%d after %.2fs: %s",
                    description,
                    attempt,
                    self._max_retries,
                    delay,
                    exc,
                )
                await self._sleep(delay)
