"""
Bounded retry policy for transient external call failures.

Adapters never sleep in their own loops; they hand a coroutine factory and a
classifier to ``RetryPolicy.run`` which retries only what the classifier
deems transient and re-raises the last error otherwise.
"""

import asyncio
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Optional, TypeVar

from orderflow.core.logging import get_logger

logger = get_logger(__name__)

T = TypeVar("T")


@dataclass(frozen=True)
class RetryPolicy:
    """
    Capped exponential backoff.

    Attributes:
        max_attempts: Total attempts including the first call
        initial_backoff: Delay before the second attempt, in seconds
        max_backoff: Upper bound of any single delay
        multiplier: Growth factor between consecutive delays
        backoff: Optional override mapping a 0-indexed retry number to a delay
    """

    max_attempts: int = 3
    initial_backoff: float = 0.5
    max_backoff: float = 8.0
    multiplier: float = 2.0
    backoff: Optional[Callable[[int], float]] = None

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        if self.initial_backoff < 0 or self.max_backoff < 0:
            raise ValueError("backoff delays cannot be negative")

    @classmethod
    def from_settings(cls, settings: Any) -> "RetryPolicy":
        return cls(
            max_attempts=settings.retry_max_attempts,
            initial_backoff=settings.retry_initial_backoff,
            max_backoff=settings.retry_max_backoff,
        )

    @classmethod
    def no_retry(cls) -> "RetryPolicy":
        return cls(max_attempts=1, initial_backoff=0.0, max_backoff=0.0)

    def delay(self, attempt: int) -> float:
        """
        Delay before retry number ``attempt`` (0-indexed).

        Args:
            attempt: Number of retries already performed

        Returns:
            Backoff delay in seconds
        """
        if self.backoff is not None:
            return max(0.0, self.backoff(attempt))
        return min(self.initial_backoff * (self.multiplier**attempt), self.max_backoff)

    def max_elapsed(self, attempt_timeout: float) -> float:
        """
        Worst-case duration of ``run`` when each attempt is cut off after
        ``attempt_timeout`` seconds: every attempt times out and every
        backoff delay is slept.

        An outer deadline shorter than this cancels the retries.
        """
        return attempt_timeout * self.max_attempts + sum(
            self.delay(n) for n in range(self.max_attempts - 1)
        )

    async def run(
        self,
        operation: str,
        func: Callable[[], Awaitable[T]],
        is_retryable: Callable[[BaseException], bool],
    ) -> T:
        """
        Await ``func()`` until it succeeds, fails permanently, or attempts run out.

        Args:
            operation: Operation name for logging
            func: Zero-argument coroutine factory, invoked once per attempt
            is_retryable: Classifier returning True for transient errors

        Returns:
            Result of the first successful attempt

        Raises:
            Exception: The last error raised by ``func``
        """
        for attempt in range(self.max_attempts):
            try:
                result = await func()
            except Exception as e:
                final = attempt + 1 >= self.max_attempts
                if final or not is_retryable(e):
                    if attempt > 0:
                        logger.warning(
                            "Giving up after retries",
                            operation=operation,
                            attempts=attempt + 1,
                            error=str(e),
                        )
                    raise

                delay = self.delay(attempt)
                logger.info(
                    "Retrying transient failure",
                    operation=operation,
                    attempt=attempt + 1,
                    max_attempts=self.max_attempts,
                    delay_seconds=delay,
                    error_type=type(e).__name__,
                )
                await asyncio.sleep(delay)
                continue

            if attempt > 0:
                logger.info(
                    "Operation succeeded after retry",
                    operation=operation,
                    attempts=attempt + 1,
                )
            return result

        raise RuntimeError("unreachable")  # pragma: no cover
