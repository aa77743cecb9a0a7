"""Pacing for oracle calls: bounded concurrency, spacing, and backoff retries."""

import asyncio
import logging
import time
from typing import Any, Awaitable, Callable, TypeVar

from tenacity import AsyncRetrying, RetryCallState, retry_if_exception_type, stop_after_attempt, wait_exponential

from featuregraph.errors import RetryableError

logger = logging.getLogger(__name__)

T = TypeVar("T")


class OracleScheduler:
    """Run oracle calls under a shared concurrency and rate budget.

    - At most `max_concurrent` calls are in flight at once.
    - Consecutive call starts are at least `min_interval` seconds apart.
    - A call raising `RetryableError` is retried with exponential backoff
      (`base_delay * 2**(attempt-1)`, capped at `max_delay`) up to
      `max_attempts` attempts in total; the last error propagates.

    One scheduler is shared by every service that talks to the same oracle.
    """

    def __init__(
        self,
        max_concurrent: int = 5,
        min_interval: float = 0.0,
        max_attempts: int = 3,
        base_delay: float = 1.0,
        max_delay: float = 30.0,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        if max_concurrent < 1:
            raise ValueError("max_concurrent must be >= 1")
        if max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")
        self.max_concurrent = max_concurrent
        self.min_interval = min_interval
        self.max_attempts = max_attempts
        self.base_delay = base_delay
        self.max_delay = max_delay
        self._sleep = sleep
        self._semaphore = asyncio.Semaphore(max_concurrent)
        self._pace_lock = asyncio.Lock()
        self._last_start: float | None = None

    async def _wait_for_slot(self) -> None:
        if self.min_interval <= 0:
            return
        async with self._pace_lock:
            now = time.monotonic()
            if self._last_start is not None:
                remaining = self._last_start + self.min_interval - now
                if remaining > 0:
                    await self._sleep(remaining)
            self._last_start = time.monotonic()

    def _wait(self, retry_state: RetryCallState) -> float:
        outcome = retry_state.outcome
        error = outcome.exception() if outcome is not None else None
        if isinstance(error, RetryableError) and error.retry_after is not None:
            return error.retry_after
        return wait_exponential(multiplier=self.base_delay, max=self.max_delay)(retry_state)

    def _log_retry(self, retry_state: RetryCallState) -> None:
        outcome = retry_state.outcome
        error = outcome.exception() if outcome is not None else None
        logger.warning(
            "Oracle call failed (attempt %d/%d): %s; retrying in %.2fs",
            retry_state.attempt_number,
            self.max_attempts,
            error,
            retry_state.next_action.sleep if retry_state.next_action is not None else 0.0,
        )

    async def run(self, fn: Callable[..., Awaitable[T]], *args: Any, **kwargs: Any) -> T:
        """Await `fn(*args, **kwargs)` under the scheduler's limits."""
        retrying = AsyncRetrying(
            stop=stop_after_attempt(self.max_attempts),
            wait=self._wait,
            retry=retry_if_exception_type(RetryableError),
            before_sleep=self._log_retry,
            sleep=self._sleep,
            reraise=True,
        )
        async for attempt in retrying:
            with attempt:
                async with self._semaphore:
                    await self._wait_for_slot()
                    return await fn(*args, **kwargs)
        raise AssertionError("unreachable")
