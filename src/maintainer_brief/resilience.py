"""Retry policy and rate limiting applied at every external collaborator boundary."""

from __future__ import annotations

import logging
import random
import threading
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import TypeVar

import httpx

logger = logging.getLogger(__name__)

T = TypeVar("T")

RETRYABLE_STATUS_CODES = frozenset({429, 500, 502, 503, 504})


def is_transient_error(error: BaseException) -> bool:
    """Classify timeouts, connection errors, 5xx, and exhausted rate limits as transient."""

    if isinstance(error, httpx.TimeoutException | httpx.NetworkError | httpx.RemoteProtocolError):
        return True
    if isinstance(error, ConnectionError | TimeoutError):
        return True
    status_code = getattr(error, "status_code", None)
    if isinstance(error, httpx.HTTPStatusError):
        status_code = error.response.status_code
    if not isinstance(status_code, int):
        return False
    if status_code in RETRYABLE_STATUS_CODES or status_code >= 500:
        return True
    return status_code == 403 and bool(getattr(error, "rate_limited", False))


@dataclass(slots=True)
class RetryPolicy:
    """Exponential backoff with optional full jitter.

    ``delay_for(n)`` is the wait before retry number ``n`` (1-based):
    ``min(max_delay, base_delay * backoff_multiplier ** (n - 1))``, or a uniform
    draw in ``[0, that]`` when jitter is enabled.
    """

    max_attempts: int = 3
    base_delay: float = 2.0
    backoff_multiplier: float = 2.0
    max_delay: float = 30.0
    jitter: bool = True
    should_retry: Callable[[BaseException], bool] = is_transient_error
    sleep: Callable[[float], None] = time.sleep
    _random: random.Random = field(default_factory=random.Random, repr=False)

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")
        if self.base_delay < 0:
            raise ValueError("base_delay must be >= 0")
        if self.backoff_multiplier < 1:
            raise ValueError("backoff_multiplier must be >= 1")

    def delay_for(self, retry_number: int) -> float:
        ceiling = min(
            self.max_delay,
            self.base_delay * (self.backoff_multiplier ** max(retry_number - 1, 0)),
        )
        if not self.jitter:
            return ceiling
        return self._random.uniform(0, ceiling)

    def can_retry(self, *, attempt: int, error: BaseException) -> bool:
        """Whether a failed ``attempt`` (1-based) may be followed by another one."""

        return attempt < self.max_attempts and self.should_retry(error)

    def call(self, operation: Callable[[], T], *, description: str = "operation") -> T:
        """Run ``operation`` retrying transient failures; the last error propagates."""

        attempt = 1
        while True:
            try:
                return operation()
            except Exception as error:
                if not self.can_retry(attempt=attempt, error=error):
                    raise
                delay = self.delay_for(attempt)
                logger.warning(
                    "Retrying %s after attempt %d/%d failed: %s (sleep %.2fs)",
                    description,
                    attempt,
                    self.max_attempts,
                    error,
                    delay,
                )
                self.sleep(delay)
                attempt += 1


class TokenBucket:
    """Thread-safe token bucket limiter: ``capacity`` burst, ``refill_rate`` tokens per second."""

    def __init__(
        self,
        *,
        capacity: int,
        refill_rate: float,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        if capacity < 1:
            raise ValueError("capacity must be >= 1")
        if refill_rate <= 0:
            raise ValueError("refill_rate must be > 0")
        self.capacity = capacity
        self.refill_rate = refill_rate
        self._clock = clock
        self._sleep = sleep
        self._tokens = float(capacity)
        self._updated_at = clock()
        self._lock = threading.Lock()

    def acquire(self) -> None:
        """Block until one token is available."""

        while True:
            with self._lock:
                self._refill()
                if self._tokens >= 1:
                    self._tokens -= 1
                    return
                wait = (1 - self._tokens) / self.refill_rate
            self._sleep(wait)

    def _refill(self) -> None:
        now = self._clock()
        elapsed = max(0.0, now - self._updated_at)
        self._tokens = min(float(self.capacity), self._tokens + elapsed * self.refill_rate)
        self._updated_at = now
