"""
Reliability patterns for Prism.

Provides per-provider sliding-window rate limiting, circuit breakers and
retry policies for provider calls.
"""

import logging
import threading
import time
from collections import deque
from enum import Enum
from typing import Any, Callable, Deque, Dict, Optional

import structlog
from tenacity import (
    AsyncRetrying,
    before_sleep_log,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential,
    wait_random,
)

logger = structlog.get_logger(__name__)

Clock = Callable[[], float]


class CircuitBreakerState(Enum):
    """Circuit breaker states."""

    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


class CircuitBreaker:
    """
    Circuit breaker pattern implementation.

    Opens after ``failure_threshold`` consecutive failures and refuses calls
    until ``recovery_timeout`` has elapsed, then lets one trial call through.
    """

    def __init__(
        self,
        name: str,
        failure_threshold: int = 5,
        recovery_timeout: float = 60.0,
        clock: Clock = time.monotonic,
    ):
        self.name = name
        self.failure_threshold = failure_threshold
        self.recovery_timeout = recovery_timeout
        self._clock = clock

        self.failure_count = 0
        self.last_failure_time: Optional[float] = None
        self.state = CircuitBreakerState.CLOSED
        self._lock = threading.Lock()

    @property
    def is_open(self) -> bool:
        """True while calls would be refused. Does not change state."""
        with self._lock:
            return self.state == CircuitBreakerState.OPEN and not self._should_attempt_reset()

    def allow_request(self) -> bool:
        """Check whether a call may proceed, moving OPEN to HALF_OPEN when due."""
        with self._lock:
            if self.state != CircuitBreakerState.OPEN:
                return True
            if self._should_attempt_reset():
                self.state = CircuitBreakerState.HALF_OPEN
                logger.info("Circuit breaker half-open", name=self.name)
                return True
            return False

    def _should_attempt_reset(self) -> bool:
        return (
            self.last_failure_time is not None
            and self._clock() >= self.last_failure_time + self.recovery_timeout
        )

    def record_success(self):
        with self._lock:
            self.failure_count = 0
            if self.state == CircuitBreakerState.HALF_OPEN:
                self.state = CircuitBreakerState.CLOSED
                logger.info("Circuit breaker closed", name=self.name)

    def record_failure(self):
        with self._lock:
            self.failure_count += 1
            self.last_failure_time = self._clock()

            if (
                self.state == CircuitBreakerState.HALF_OPEN
                or self.failure_count >= self.failure_threshold
            ):
                self.state = CircuitBreakerState.OPEN
                logger.warning(
                    "Circuit breaker opened",
                    name=self.name,
                    failure_count=self.failure_count,
                    threshold=self.failure_threshold,
                )

    def reset(self):
        with self._lock:
            self.failure_count = 0
            self.state = CircuitBreakerState.CLOSED
            self.last_failure_time = None
        logger.info("Circuit breaker reset", name=self.name)

    @property
    def status(self) -> Dict[str, Any]:
        """Get current circuit breaker status."""
        return {
            "name": self.name,
            "state": self.state.value,
            "failure_count": self.failure_count,
            "last_failure_time": self.last_failure_time,
            "next_attempt_time": (
                self.last_failure_time + self.recovery_timeout if self.last_failure_time else None
            ),
        }


class _Window:
    """Timestamp log for one provider."""

    def __init__(self, quota: int, window_seconds: float):
        self.quota = quota
        self.window_seconds = window_seconds
        self.calls: Deque[float] = deque()
        self.lock = threading.Lock()

    def prune(self, now: float):
        horizon = now - self.window_seconds
        while self.calls and self.calls[0] <= horizon:
            self.calls.popleft()


class SlidingWindowRateLimiter:
    """
    Per-provider sliding-window quota tracking.

    Each provider keeps a log of call timestamps; a call is admitted only when
    fewer than ``quota`` calls fall inside the trailing window, so no window of
    that length ever contains more than ``quota`` admitted calls. Each provider
    has its own lock; providers never contend with each other.
    """

    def __init__(self, clock: Clock = time.monotonic):
        self._clock = clock
        self._windows: Dict[str, _Window] = {}
        self._lock = threading.Lock()

    def configure(self, provider: str, quota: int, window_seconds: float):
        """Set (or replace) the quota for a provider."""
        if quota < 1 or window_seconds <= 0:
            raise ValueError("quota must be >= 1 and window_seconds > 0")
        with self._lock:
            self._windows[provider] = _Window(quota, window_seconds)

    def _window(self, provider: str) -> Optional[_Window]:
        with self._lock:
            return self._windows.get(provider)

    def try_acquire(self, provider: str) -> bool:
        """
        Atomically check and record one call for ``provider``.

        Returns:
            True if the call fits within quota, False if the window is full.
            Providers without a configured quota are never limited.
        """
        window = self._window(provider)
        if window is None:
            return True

        with window.lock:
            now = self._clock()
            window.prune(now)
            if len(window.calls) >= window.quota:
                logger.debug(
                    "Rate limit reached",
                    provider=provider,
                    quota=window.quota,
                    window_seconds=window.window_seconds,
                )
                return False
            window.calls.append(now)
            return True

    def remaining(self, provider: str) -> Optional[int]:
        """Calls still allowed in the current window (None when unlimited)."""
        window = self._window(provider)
        if window is None:
            return None
        with window.lock:
            window.prune(self._clock())
            return window.quota - len(window.calls)

    def has_capacity(self, provider: str) -> bool:
        """Whether a call would currently be admitted. Does not record a call."""
        remaining = self.remaining(provider)
        return remaining is None or remaining > 0

    def status(self) -> Dict[str, Dict[str, Any]]:
        with self._lock:
            providers = list(self._windows.items())
        result = {}
        for name, window in providers:
            with window.lock:
                window.prune(self._clock())
                result[name] = {
                    "quota": window.quota,
                    "window_seconds": window.window_seconds,
                    "used": len(window.calls),
                }
        return result


def retrying(
    max_attempts: int = 3,
    backoff_initial: float = 0.5,
    backoff_max: float = 8.0,
    retry_on: Callable[[BaseException], bool] = lambda e: True,
) -> AsyncRetrying:
    """
    Build a tenacity retry controller for async provider calls.

    Waits grow exponentially with jitter; the final failure is re-raised
    unchanged so callers see the original exception type.

    Args:
        max_attempts: Total attempts including the first call
        backoff_initial: First wait in seconds
        backoff_max: Ceiling for any single wait
        retry_on: Predicate selecting which exceptions are worth retrying
    """
    return AsyncRetrying(
        stop=stop_after_attempt(max_attempts),
        wait=(
            wait_exponential(multiplier=backoff_initial, max=backoff_max)
            + wait_random(0, backoff_initial)
        ),
        retry=retry_if_exception(retry_on),
        before_sleep=before_sleep_log(logging.getLogger(__name__), logging.WARNING),
        reraise=True,
    )


def elapsed_ms(started: float, clock: Clock = time.monotonic) -> float:
    return round((clock() - started) * 1000, 2)

