"""
Retry Policy - Bounded exponential backoff with jitter.

Transient errors are retried locally up to an attempt count and a total
time budget. Every sleep waits on the caller's cancellation signal, so an
abort is noticed promptly instead of after the backoff elapses.
"""

import asyncio
import logging
import random
import time
from typing import Awaitable, Callable, Optional, Tuple, TypeVar

from config import RetryConfig
from errors import (
    ErrorKind,
    ReconcileCancelled,
    RetriesExhausted,
    classify,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")

# Conflict is retryable, but callers decide how (usually after a fresh read).
DEFAULT_RETRY_ON: Tuple[ErrorKind, ...] = (ErrorKind.TRANSIENT,)


def check_cancelled(cancel: Optional[asyncio.Event], what: str) -> None:
    """
    Raises:
        ReconcileCancelled: If the cancellation signal is set.
    """
    if cancel is not None and cancel.is_set():
        raise ReconcileCancelled(f"{what} cancelled")


async def cancellable_sleep(
    delay: float, cancel: Optional[asyncio.Event], what: str = "operation"
) -> None:
    """
    Sleep for ``delay`` seconds unless the cancellation signal fires first.

    Raises:
        ReconcileCancelled: If cancelled before or during the sleep.
    """
    check_cancelled(cancel, what)
    if cancel is None:
        await asyncio.sleep(delay)
        return
    try:
        await asyncio.wait_for(cancel.wait(), timeout=delay)
    except asyncio.TimeoutError:
        return
    raise ReconcileCancelled(f"{what} cancelled")


class RetryPolicy:
    """Exponential backoff policy built from a RetryConfig."""

    def __init__(
        self,
        config: Optional[RetryConfig] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.config = config or RetryConfig()
        self._clock = clock

    @property
    def max_attempts(self) -> int:
        return max(1, self.config.max_attempts)

    def compute_delay(self, attempt: int) -> float:
        """
        Delay before retry number ``attempt`` (1-based).

        base_delay * 2^(attempt-1), capped at max_delay, with ±jitter_factor.
        """
        delay = min(
            self.config.base_delay * (2 ** min(attempt - 1, 10)),
            self.config.max_delay,
        )
        jitter = 1 + (random.random() * 2 - 1) * self.config.jitter_factor
        return max(0.0, delay * jitter)

    async def run(
        self,
        operation: Callable[[], Awaitable[T]],
        what: str,
        cancel: Optional[asyncio.Event] = None,
        retry_on: Tuple[ErrorKind, ...] = DEFAULT_RETRY_ON,
    ) -> T:
        """
        Run ``operation`` until it succeeds or the budget is spent.

        Args:
            operation: Zero-argument coroutine factory; called once per attempt.
            what: Human-readable description for logs.
            cancel: Optional cancellation signal.
            retry_on: Error kinds that trigger another attempt.

        Returns:
            The operation's result.

        Raises:
            ClassifiedError: The first non-retryable error, unchanged.
            RetriesExhausted: If a retryable error outlasts the budget.
            ReconcileCancelled: If the cancellation signal fires.
        """
        started = self._clock()
        attempt = 0
        while True:
            check_cancelled(cancel, what)
            attempt += 1
            try:
                return await operation()
            except Exception as e:
                error = classify(e)

            if error.kind not in retry_on:
                raise error

            elapsed = self._clock() - started
            if attempt >= self.max_attempts:
                logger.error(f"Giving up on {what} after {attempt} attempt(s): {error}")
                raise RetriesExhausted(
                    f"{what}: retries exhausted after {attempt} attempt(s)",
                    attempts=attempt,
                    last_error=error,
                )

            delay = self.compute_delay(attempt)
            if elapsed + delay > self.config.time_budget:
                logger.error(
                    f"Giving up on {what}: time budget of "
                    f"{self.config.time_budget}s spent after {attempt} attempt(s)"
                )
                raise RetriesExhausted(
                    f"{what}: time budget exhausted after {attempt} attempt(s)",
                    attempts=attempt,
                    last_error=error,
                )

            logger.warning(
                f"Retrying {what} in {delay:.2f}s "
                f"(attempt {attempt}/{self.max_attempts}): {error}"
            )
            await cancellable_sleep(delay, cancel, what)
