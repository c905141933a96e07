"""
Bounded exponential backoff for calls to external services.

`retry_async` knows nothing about HTTP: it retries any coroutine that
raises a non-permanent `TransportError`, honouring the error's
`retry_after` hint, and gives up after a fixed number of attempts or a
wall-clock budget, whichever comes first.
"""

import asyncio
import logging
import random
import time
from dataclasses import dataclass, replace
from typing import Awaitable, Callable, Optional, TypeVar

from .errors import RetryExhaustedError, TransportError

T = TypeVar("T")


@dataclass(frozen=True)
class BackoffPolicy:
    initial_interval: float = 1.0
    multiplier: float = 2.0
    max_interval: float = 60.0
    randomization_factor: float = 0.2
    max_attempts: int = 5
    max_elapsed: float = 300.0

    def rebased(self, retry_after: float) -> "BackoffPolicy":
        """Schedule restarted from a server hint: slower growth, tighter jitter."""
        return replace(
            self,
            initial_interval=retry_after,
            multiplier=1.5,
            randomization_factor=0.1,
            max_interval=max(self.max_interval, retry_after),
        )

    def jittered(self, interval: float, rng: Callable[[], float] = random.random) -> float:
        delta = self.randomization_factor * interval
        return max(0.0, interval - delta + rng() * 2 * delta)


DEFAULT_POLICY = BackoffPolicy()


async def retry_async(
    operation: Callable[[], Awaitable[T]],
    policy: Optional[BackoffPolicy] = None,
    *,
    description: str = "operation",
    logger: Optional[logging.Logger] = None,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    clock: Callable[[], float] = time.monotonic,
    rng: Callable[[], float] = random.random,
) -> T:
    """
    Await `operation` until it succeeds or the policy is exhausted.

    - Permanent `TransportError`s are re-raised immediately.
    - Any other exception type is not retried.
    - Exhaustion raises `RetryExhaustedError` chained to the last failure.
    """
    policy = policy or DEFAULT_POLICY
    logger = logger or logging.getLogger(__name__)
    active = policy
    interval = active.initial_interval
    started = clock()
    attempt = 0

    while True:
        attempt += 1
        try:
            return await operation()
        except TransportError as exc:
            if exc.permanent:
                raise
            last_error = exc

        if attempt >= policy.max_attempts:
            raise RetryExhaustedError(
                f"{description}: giving up after {attempt} attempts: {last_error}",
                attempts=attempt,
                last_error=last_error,
            ) from last_error

        if last_error.retry_after is not None and last_error.retry_after > 0:
            active = policy.rebased(float(last_error.retry_after))
            interval = active.initial_interval

        delay = active.jittered(interval, rng)
        elapsed = clock() - started
        if elapsed + delay > policy.max_elapsed:
            raise RetryExhaustedError(
                f"{description}: retry budget of {policy.max_elapsed:.0f}s exhausted "
                f"after {attempt} attempts: {last_error}",
                attempts=attempt,
                last_error=last_error,
            ) from last_error

        logger.warning(
            "%s failed (attempt %s/%s, status=%s), retrying in %.2fs: %s",
            description,
            attempt,
            policy.max_attempts,
            last_error.status_code,
            delay,
            last_error,
        )
        await sleep(delay)
        interval = min(interval * active.multiplier, active.max_interval)
