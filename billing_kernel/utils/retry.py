"""
Bounded retry and client-side rate limiting for vendor calls.

Only TransientIOError (and its RateLimitedError subclass) is retried.  Every
other exception propagates on the first attempt.  A RateLimitedError that
carries ``retry_after`` waits at least that long before the next attempt.
"""

import threading
import time
from typing import Callable, TypeVar

from billing_kernel.exceptions import RateLimitedError, TransientIOError
from billing_kernel.logging_config import get_logger

logger = get_logger("utils.retry")

T = TypeVar("T")


def backoff_delay(attempt: int, base_delay: float, max_delay: float) -> float:
    """Exponential delay for a zero-based attempt number, capped at max_delay."""
    return min(max_delay, base_delay * (2**attempt))


def retry_transient(
    fn: Callable[[], T],
    *,
    operation: str,
    attempts: int = 5,
    base_delay: float = 0.5,
    max_delay: float = 30.0,
    sleep: Callable[[float], None] = time.sleep,
) -> T:
    """
    Call ``fn`` until it succeeds or ``attempts`` calls have failed.

    Raises:
        TransientIOError: The last transient failure once attempts run out.
    """
    if attempts < 1:
        raise ValueError("attempts must be >= 1")

    for attempt in range(attempts):
        try:
            return fn()
        except TransientIOError as exc:
            if attempt == attempts - 1:
                logger.warning(
                    "retry_exhausted",
                    extra={"operation": operation, "attempts": attempts},
                )
                raise
            delay = backoff_delay(attempt, base_delay, max_delay)
            if isinstance(exc, RateLimitedError) and exc.retry_after is not None:
                delay = max(delay, min(exc.retry_after, max_delay))
            logger.info(
                "retry_scheduled",
                extra={
                    "operation": operation,
                    "attempt": attempt + 1,
                    "delay_seconds": delay,
                    "error_code": exc.code,
                },
            )
            sleep(delay)

    raise AssertionError("unreachable")


class RateLimiter:
    """
    Thread-safe token bucket shared by every probe worker.

    ``rate`` tokens are added per second up to ``capacity``; ``acquire``
    blocks until a token is available.
    """

    def __init__(
        self,
        rate: float,
        capacity: int | None = None,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
    ):
        if rate <= 0:
            raise ValueError("rate must be positive")
        self._rate = rate
        self._capacity = capacity or max(1, int(rate))
        self._tokens = float(self._capacity)
        self._clock = clock
        self._sleep = sleep
        self._updated = clock()
        self._lock = threading.Lock()

    def _refill(self) -> None:
        now = self._clock()
        elapsed = now - self._updated
        self._updated = now
        self._tokens = min(self._capacity, self._tokens + elapsed * self._rate)

    def acquire(self) -> None:
        while True:
            with self._lock:
                self._refill()
                if self._tokens >= 1:
                    self._tokens -= 1
                    return
                wait = (1 - self._tokens) / self._rate
            self._sleep(wait)
