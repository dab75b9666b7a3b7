"""
Retry Policy Implementation

Bounded retries with exponential backoff for transient network failures.
Permanent failures are re-raised on the first attempt.
"""

from __future__ import annotations

import asyncio
import random
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Optional, TypeVar

import structlog

from wasmgate.errors import NetworkError

logger = structlog.get_logger(__name__)

T = TypeVar("T")


def is_transient(exc: BaseException) -> bool:
    """Only network errors flagged transient are worth retrying."""
    return isinstance(exc, NetworkError) and exc.transient


@dataclass
class RetryConfig:
    """Configuration for retry policy."""

    # Retries after the first attempt (0 = no retries)
    max_attempts: int = 3

    # Base delay between retries (seconds)
    base_delay: float = 0.5

    # Maximum delay between retries (seconds)
    max_delay: float = 8.0

    # Delay multiplier for exponential backoff
    multiplier: float = 2.0

    # Add randomization to prevent thundering herd
    jitter: bool = True
    jitter_factor: float = 0.1  # ±10%

    retry_predicate: Callable[[BaseException], bool] = is_transient

    def __post_init__(self) -> None:
        if self.max_attempts < 0:
            raise ValueError("max_attempts must be >= 0")


@dataclass
class RetryMetrics:
    """Metrics for retry operations."""

    total_calls: int = 0
    successful_first_try: int = 0
    successful_after_retry: int = 0
    failed: int = 0
    total_retries: int = 0
    total_delay_seconds: float = 0.0

    def to_dict(self) -> dict[str, Any]:
        return {
            "total_calls": self.total_calls,
            "successful_first_try": self.successful_first_try,
            "successful_after_retry": self.successful_after_retry,
            "failed": self.failed,
            "total_retries": self.total_retries,
            "total_delay_seconds": self.total_delay_seconds,
        }


class ExponentialBackoff:
    """Computes delay for each retry attempt with optional jitter."""

    def __init__(
        self,
        base_delay: float = 0.5,
        max_delay: float = 8.0,
        multiplier: float = 2.0,
        jitter: bool = True,
        jitter_factor: float = 0.1,
    ):
        self.base_delay = base_delay
        self.max_delay = max_delay
        self.multiplier = multiplier
        self.jitter = jitter
        self.jitter_factor = jitter_factor

    def get_delay(self, attempt: int) -> float:
        """Delay in seconds before retry number `attempt` (0-indexed)."""
        delay = min(self.base_delay * (self.multiplier ** attempt), self.max_delay)

        if self.jitter:
            jitter_range = delay * self.jitter_factor
            delay += random.uniform(-jitter_range, jitter_range)

        return max(0.0, delay)


class RetryPolicy:
    """
    Retries an async operation while it fails transiently.

    Usage:
        policy = RetryPolicy(RetryConfig(max_attempts=3))
        data = await policy.execute(fetch, url)
    """

    def __init__(
        self,
        config: Optional[RetryConfig] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.config = config or RetryConfig()
        self._sleep = sleep
        self._metrics = RetryMetrics()
        self._backoff = ExponentialBackoff(
            base_delay=self.config.base_delay,
            max_delay=self.config.max_delay,
            multiplier=self.config.multiplier,
            jitter=self.config.jitter,
            jitter_factor=self.config.jitter_factor,
        )

    @property
    def metrics(self) -> RetryMetrics:
        return self._metrics

    async def execute(
        self,
        func: Callable[..., Awaitable[T]],
        *args: Any,
        **kwargs: Any,
    ) -> T:
        """
        Execute an async function with retry logic.

        Raises:
            The last exception once it is permanent or retries are exhausted
        """
        self._metrics.total_calls += 1
        attempt = 0

        while True:
            try:
                result = await func(*args, **kwargs)
            except Exception as e:
                if not self.config.retry_predicate(e) or attempt >= self.config.max_attempts:
                    self._metrics.failed += 1
                    raise

                delay = self._backoff.get_delay(attempt)
                self._metrics.total_retries += 1
                self._metrics.total_delay_seconds += delay

                logger.warning(
                    "Retrying operation",
                    attempt=attempt + 1,
                    max_attempts=self.config.max_attempts,
                    delay=round(delay, 3),
                    error=str(e),
                )

                await self._sleep(delay)
                attempt += 1
                continue

            if attempt == 0:
                self._metrics.successful_first_try += 1
            else:
                self._metrics.successful_after_retry += 1
            return result
