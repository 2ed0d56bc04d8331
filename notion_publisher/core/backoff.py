"""Exponential backoff for async remote calls.

Provides:
- BackoffPolicy: immutable retry parameters, one per call site
- RetryState: per-invocation attempt bookkeeping handed to observers
- execute(): run an async operation under a policy
"""

from __future__ import annotations

import asyncio
import logging
import random
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass(frozen=True)
class BackoffPolicy:
    """Retry parameters for one kind of remote call."""

    max_attempts: int = 3
    min_delay: float = 1.0  # seconds
    max_delay: float = 15.0  # seconds
    factor: float = 2.0
    jitter: bool = False

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        if self.min_delay < 0 or self.max_delay < self.min_delay:
            raise ValueError("delays must satisfy 0 <= min_delay <= max_delay")
        if self.factor < 1:
            raise ValueError("factor must be >= 1")

    def base_delay(self, attempt: int) -> float:
        """Delay after the given failed attempt (1-based), before jitter."""
        return min(self.max_delay, self.min_delay * self.factor ** (attempt - 1))

    def compute_delay(self, attempt: int, rng: random.Random | None = None) -> float:
        """Delay after the given failed attempt, jittered into [min_delay, base]."""
        delay = self.base_delay(attempt)
        if self.jitter and delay > self.min_delay:
            delay = (rng or random).uniform(self.min_delay, delay)
        return delay


@dataclass
class RetryState:
    """Bookkeeping for a single execute() invocation."""

    attempt: int = 0
    last_error: BaseException | None = None
    next_delay: float = 0.0


class RetryExhaustedError(Exception):
    """Raised when every attempt allowed by a policy has failed.

    The original error is kept on ``last_error`` and chained as ``__cause__``.
    """

    def __init__(self, attempts: int, last_error: BaseException, operation: str = "operation"):
        super().__init__(f"{operation} failed after {attempts} attempts: {last_error}")
        self.attempts = attempts
        self.last_error = last_error
        self.operation = operation

    @property
    def retriable(self) -> bool:
        return False


def is_retriable(error: BaseException) -> bool:
    """Errors are retried unless they explicitly say otherwise."""
    return getattr(error, "retriable", True) is not False


async def execute(
    operation: Callable[[], Awaitable[T]],
    policy: BackoffPolicy,
    *,
    on_retry: Callable[[RetryState], Any] | None = None,
    name: str | None = None,
    sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    rng: random.Random | None = None,
) -> T:
    """Run ``operation`` until it succeeds or the policy is exhausted.

    Args:
        operation: Zero-argument coroutine factory, called once per attempt.
        policy: Attempt ceiling and delay bounds for this call site.
        on_retry: Observer called after each failed attempt that will be
            retried, before sleeping. Exceptions it raises are logged and ignored.
        name: Label used in log lines and in the exhaustion message.
        sleep: Awaitable sleep function (injected by tests).
        rng: Random source for jitter.

    Returns:
        Whatever ``operation`` returns.

    Raises:
        RetryExhaustedError: After ``policy.max_attempts`` consecutive failures.
        Exception: A non-retriable error, unchanged, on the attempt it occurs.
    """
    label = name or getattr(operation, "__name__", "operation")
    state = RetryState()

    while True:
        state.attempt += 1
        try:
            return await operation()
        except asyncio.CancelledError:
            raise
        except Exception as e:
            state.last_error = e
            if not is_retriable(e):
                raise
            if state.attempt >= policy.max_attempts:
                raise RetryExhaustedError(state.attempt, e, label) from e

            state.next_delay = policy.compute_delay(state.attempt, rng)
            retry_after = getattr(e, "retry_after", None)
            if retry_after:
                # Server-requested wait, still capped by the policy
                state.next_delay = min(policy.max_delay, max(state.next_delay, retry_after))
            logger.warning(
                f"{label} failed ({type(e).__name__}: {e}). "
                f"Retrying in {state.next_delay:.1f}s (attempt {state.attempt}/{policy.max_attempts})"
            )
            if on_retry is not None:
                try:
                    on_retry(state)
                except Exception:
                    logger.exception(f"Retry observer for {label} raised")
            await sleep(state.next_delay)
