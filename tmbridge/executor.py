"""
Copyright (c) 2025 Eric C. Mumford (@heymumford)
This file is part of TMBridge, licensed under the MIT License.
See LICENSE file for details.
"""

"""
Throttled, retrying execution of request batches.

Each pipeline direction (source, target) owns one ``ThrottledBatchExecutor``.
It bounds the number of operations in flight with a semaphore, keeps the
dispatch rate under a requests-per-second cap with a rolling one-second
window, and retries retryable failures with linear backoff. Every input item
gets exactly one ``Outcome``, at its input position. A run can be halted by
the first failure of a given error type; items not dispatched by then fail
with that error and zero attempts.
"""

import asyncio
import time
from collections import deque
from collections.abc import Awaitable, Callable, Sequence
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Generic, TypeVar

from tmbridge.core.config import ExecutorConfig
from tmbridge.core.logging import get_logger
from tmbridge.errors import ErrorManager, ETLError, ETLErrorType, RateLimitError

logger = get_logger("tmbridge.executor")

T = TypeVar("T")  # Input type
R = TypeVar("R")  # Result type

Clock = Callable[[], float]
Sleep = Callable[[float], Awaitable[Any]]


class ThrottleWindow:
    """
    Dispatch timestamps of the last second.

    ``try_acquire`` prunes, checks and records in one synchronous step, so no
    other task can slip a dispatch in between the check and the record.

    Args:
        rate_cap: Maximum dispatches per window
        window: Window length in seconds
        clock: Monotonic time source
    """

    def __init__(self, rate_cap: int, window: float = 1.0, clock: Clock = time.monotonic):
        if rate_cap <= 0:
            raise ValueError("rate_cap must be positive")
        self.rate_cap = rate_cap
        self.window = window
        self.clock = clock
        self.timestamps: deque[float] = deque()

    def prune(self, now: float) -> None:
        while self.timestamps and now - self.timestamps[0] >= self.window:
            self.timestamps.popleft()

    def has_capacity(self) -> bool:
        return len(self.timestamps) < self.rate_cap

    def record(self, now: float) -> None:
        self.timestamps.append(now)

    def try_acquire(self) -> bool:
        now = self.clock()
        self.prune(now)
        if not self.has_capacity():
            return False
        self.record(now)
        return True

    async def acquire(self, sleep: Sleep = asyncio.sleep) -> None:
        """Wait until a dispatch slot is free, then take it."""
        while not self.try_acquire():
            await sleep(1.0 / self.rate_cap)


class OutcomeStatus(str, Enum):
    """Status of one executed item."""

    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


@dataclass
class Outcome(Generic[T, R]):
    """
    Result of running one item.

    Attributes:
        index: Position of the item in the input
        item: The input item
        status: Current status
        value: Operation result when completed
        error: Typed error when failed
        attempts: Number of dispatches made
        started_at: Time of the first dispatch
        completed_at: Time of completion or final failure
    """

    index: int
    item: T
    status: OutcomeStatus = OutcomeStatus.PENDING
    value: R | None = None
    error: ETLError | None = None
    attempts: int = 0
    started_at: float | None = None
    completed_at: float | None = None

    def mark_running(self) -> None:
        self.status = OutcomeStatus.RUNNING
        if self.started_at is None:
            self.started_at = time.time()
        self.attempts += 1

    def mark_completed(self, value: R) -> None:
        self.status = OutcomeStatus.COMPLETED
        self.value = value
        self.completed_at = time.time()

    def mark_failed(self, error: ETLError) -> None:
        self.status = OutcomeStatus.FAILED
        self.error = error
        self.completed_at = time.time()

    @property
    def ok(self) -> bool:
        return self.status == OutcomeStatus.COMPLETED

    @property
    def processing_time(self) -> float | None:
        if self.started_at and self.completed_at:
            return self.completed_at - self.started_at
        return None


def first_failure(
    outcomes: Sequence[Outcome[T, R]], error_types: tuple[type[BaseException], ...]
) -> Outcome[T, R] | None:
    """First dispatched outcome that failed with one of ``error_types``."""
    return next((o for o in outcomes if o.attempts and isinstance(o.error, error_types)), None)


class ThrottledBatchExecutor:
    """
    Runs async operations under a concurrency bound and a rate cap.

    Args:
        direction: ``source`` or ``target``, used in logs and error context
        concurrency: Maximum operations in flight
        rate_cap: Maximum dispatches per second
        retry_attempts: Retries after the first attempt
        retry_delay: Base delay in seconds, multiplied by the attempt number
        batch_size: Items per batch, None or 0 for a single batch
        inter_batch_delay: Pause in seconds between batches
        clock: Monotonic time source for the throttle window
        sleep: Coroutine used for every wait
    """

    def __init__(
        self,
        direction: str,
        concurrency: int = 5,
        rate_cap: int = 2,
        retry_attempts: int = 3,
        retry_delay: float = 1.0,
        batch_size: int | None = None,
        inter_batch_delay: float = 0.0,
        clock: Clock = time.monotonic,
        sleep: Sleep = asyncio.sleep,
    ):
        if concurrency <= 0:
            raise ValueError("concurrency must be positive")
        self.direction = direction
        self.concurrency = concurrency
        self.retry_attempts = max(0, retry_attempts)
        self.retry_delay = retry_delay
        self.batch_size = batch_size
        self.inter_batch_delay = inter_batch_delay
        self.sleep = sleep
        self.window = ThrottleWindow(rate_cap, clock=clock)

    @classmethod
    def from_config(
        cls,
        direction: str,
        executor_config: ExecutorConfig,
        rate_cap: int | None = None,
        **kwargs: Any,
    ) -> "ThrottledBatchExecutor":
        """Build an executor from app settings, with an optional rate cap override."""
        return cls(
            direction,
            concurrency=executor_config.concurrency,
            rate_cap=rate_cap or executor_config.requests_per_second,
            retry_attempts=executor_config.retry_attempts,
            retry_delay=executor_config.retry_delay,
            batch_size=executor_config.batch_size,
            inter_batch_delay=executor_config.inter_batch_delay,
            **kwargs,
        )

    @property
    def rate_cap(self) -> int:
        return self.window.rate_cap

    async def run(
        self,
        items: Sequence[T],
        operation: Callable[[T], Awaitable[R]],
        abort_on: tuple[type[BaseException], ...] = (),
    ) -> list[Outcome[T, R]]:
        """
        Run ``operation`` once per item.

        Args:
            items: Inputs, e.g. URLs or request descriptions
            operation: Coroutine function invoked with each item
            abort_on: Error types whose first final failure halts the run;
                operations in flight finish, nothing new is dispatched

        Returns:
            One outcome per item, in input order
        """
        outcomes: list[Outcome[T, R]] = [Outcome(i, item) for i, item in enumerate(items)]
        if not outcomes:
            return outcomes

        semaphore = asyncio.Semaphore(self.concurrency)
        size = self.batch_size or len(outcomes)
        batches = [outcomes[i : i + size] for i in range(0, len(outcomes), size)]
        halt: list[ETLError] = []

        for number, batch in enumerate(batches, start=1):
            if halt:
                break
            if number > 1 and self.inter_batch_delay > 0:
                await self.sleep(self.inter_batch_delay)
            logger.debug(
                f"[{self.direction}] Running batch {number}/{len(batches)} ({len(batch)} items)"
            )
            await asyncio.gather(
                *(self._guarded(semaphore, o, operation, abort_on, halt) for o in batch)
            )

        if halt:
            skipped = [o for o in outcomes if o.status == OutcomeStatus.PENDING]
            for outcome in skipped:
                outcome.mark_failed(halt[0])
            logger.error(
                f"[{self.direction}] Halted on {type(halt[0]).__name__}: "
                f"{len(skipped)} operations not dispatched"
            )

        failed = sum(1 for o in outcomes if not o.ok)
        if failed:
            logger.warning(f"[{self.direction}] {failed}/{len(outcomes)} operations failed")
        return outcomes

    async def call(self, operation: Callable[[], Awaitable[R]]) -> R:
        """
        One throttled, retried invocation.

        Returns:
            The operation result

        Raises:
            ETLError: The typed error of the final attempt
        """
        outcome: Outcome[None, R] = Outcome(0, None)
        await self._attempt(outcome, lambda _: operation())
        if outcome.error is not None:
            raise outcome.error
        return outcome.value  # type: ignore[return-value]

    async def _guarded(
        self,
        semaphore: asyncio.Semaphore,
        outcome: Outcome[T, R],
        operation: Callable[[T], Awaitable[R]],
        abort_on: tuple[type[BaseException], ...],
        halt: list[ETLError],
    ) -> None:
        async with semaphore:
            await self._attempt(outcome, operation, abort_on, halt)

    async def _attempt(
        self,
        outcome: Outcome[T, R],
        operation: Callable[[T], Awaitable[R]],
        abort_on: tuple[type[BaseException], ...] = (),
        halt: list[ETLError] | None = None,
    ) -> None:
        max_attempts = self.retry_attempts + 1
        last_error: ETLError | None = None
        while True:
            await self.window.acquire(self.sleep)
            if halt:
                # A retried item keeps its own last error
                if last_error is not None:
                    outcome.mark_failed(last_error)
                return
            outcome.mark_running()
            try:
                value = await operation(outcome.item)
            except Exception as e:
                error = ErrorManager.classify(
                    e,
                    ETLErrorType.UNKNOWN,
                    {"direction": self.direction, "attempt": outcome.attempts},
                )
                if not error.is_retryable or outcome.attempts >= max_attempts:
                    logger.debug(
                        f"[{self.direction}] Item {outcome.index} failed after "
                        f"{outcome.attempts} attempt(s): {error.message}"
                    )
                    outcome.mark_failed(error)
                    if halt is not None and not halt and isinstance(error, abort_on):
                        halt.append(error)
                    return

                last_error = error
                delay = self.retry_delay * outcome.attempts
                if isinstance(error, RateLimitError) and error.retry_after:
                    delay = max(delay, error.retry_after)
                logger.warning(
                    f"[{self.direction}] Attempt {outcome.attempts}/{max_attempts} for item "
                    f"{outcome.index} failed: {error.message}. Retrying in {delay:.2f}s"
                )
                await self.sleep(delay)
            else:
                outcome.mark_completed(value)
                return
