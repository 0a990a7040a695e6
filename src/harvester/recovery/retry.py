"""
Retry with exponential backoff.

Thin policy layer over tenacity. The delay after failed attempt ``n`` is
``initial_delay * multiplier ** (n - 1)`` capped at ``max_delay``, so the
sleeps before attempts 2, 3, 4 are 1s, 2s, 4s with the default policy.

Cancellation is the asyncio one: a ``CancelledError`` raised by the operation
or by a backoff sleep is never retried and propagates immediately.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Awaitable, Callable, Optional, TypeVar

import structlog
from tenacity import AsyncRetrying, RetryCallState, retry_if_exception_type, stop_after_attempt

from harvester.observability.metrics import METRICS

if TYPE_CHECKING:
    from harvester.config.config import CrawlerConfig

logger = structlog.get_logger(__name__)

T = TypeVar("T")


@dataclass(frozen=True)
class RetryPolicy:
    max_attempts: int = 3
    multiplier: float = 2.0
    initial_delay: float = 1.0
    max_delay: float = 30.0

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        if self.initial_delay < 0 or self.max_delay < 0:
            raise ValueError("delays cannot be negative")

    @classmethod
    def from_config(cls, config: CrawlerConfig) -> RetryPolicy:
        return cls(
            max_attempts=config.retry_max_attempts,
            multiplier=config.retry_backoff_multiplier,
            initial_delay=config.retry_initial_delay,
            max_delay=config.retry_max_delay,
        )

    def delay_after(self, attempt: int) -> float:
        """Backoff to apply once ``attempt`` (1-based) has failed."""
        return min(self.initial_delay * self.multiplier ** (attempt - 1), self.max_delay)


class RetryExecutor:
    """Runs zero-argument coroutine factories under a ``RetryPolicy``."""

    def __init__(
        self,
        policy: Optional[RetryPolicy] = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        self.policy = policy or RetryPolicy()
        self._sleep = sleep

    def _wait(self, retry_state: RetryCallState) -> float:
        return self.policy.delay_after(retry_state.attempt_number)

    def _before_sleep(self, retry_state: RetryCallState) -> None:
        METRICS["retry_attempts"].inc()
        error = retry_state.outcome.exception() if retry_state.outcome else None
        logger.warning(
            "Retry attempt failed, retrying",
            attempt=retry_state.attempt_number,
            max_attempts=self.policy.max_attempts,
            delay=retry_state.next_action.sleep if retry_state.next_action else None,
            error=str(error),
        )

    async def run(self, operation: Callable[[], Awaitable[T]]) -> T:
        """
        Invoke ``operation`` until it succeeds or attempts run out.

        Returns the first successful result; raises the last error after
        exhausting attempts.
        """
        retrying = AsyncRetrying(
            stop=stop_after_attempt(self.policy.max_attempts),
            wait=self._wait,
            retry=retry_if_exception_type(Exception),
            sleep=self._sleep,
            before_sleep=self._before_sleep,
            reraise=True,
        )
        attempt_number = 0
        try:
            async for attempt in retrying:
                with attempt:
                    attempt_number = attempt.retry_state.attempt_number
                    result = await operation()
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.error("All retry attempts failed", attempts=attempt_number, error=str(e))
            raise

        if attempt_number > 1:
            logger.info("Retry succeeded", attempt=attempt_number)
        return result
