"""Retry with exponential backoff and a consecutive-failure circuit breaker."""

from __future__ import annotations

import logging
import threading
import time
from collections.abc import Callable
from typing import TypeVar

from devpipe.core.errors import ProviderUnhealthy

logger = logging.getLogger(__name__)

T = TypeVar("T")

RETRY_ATTEMPTS = 3
RETRY_INITIAL_DELAY = 0.5
RETRY_MAX_DELAY = 5.0
BREAKER_FAILURE_THRESHOLD = 5
BREAKER_RESET_TIMEOUT = 30.0


def call_with_retry(
    fn: Callable[..., T],
    *args,
    attempts: int = RETRY_ATTEMPTS,
    initial_delay: float = RETRY_INITIAL_DELAY,
    max_delay: float = RETRY_MAX_DELAY,
    sleep: Callable[[float], None] = time.sleep,
    **kwargs,
) -> T:
    """Call fn, retrying on any exception with doubling delays capped at max_delay."""
    delay = initial_delay
    for attempt in range(1, attempts + 1):
        try:
            return fn(*args, **kwargs)
        except Exception as e:
            if attempt == attempts:
                logger.error(
                    "%s failed after %d attempts: %s",
                    getattr(fn, "__name__", "call"), attempts, e,
                )
                raise
            logger.warning(
                "%s failed (attempt %d/%d), retrying in %.1fs: %s",
                getattr(fn, "__name__", "call"), attempt, attempts, delay, e,
            )
            sleep(delay)
            delay = min(delay * 2, max_delay)
    raise AssertionError("unreachable")


class CircuitBreaker:
    """Opens after a run of consecutive failures; half-opens after a cooldown.

    While open every call fails fast with ProviderUnhealthy. In the half-open
    state a single trial call is let through and concurrent callers keep
    failing fast until it returns: success closes the breaker, failure
    re-opens it for another cooldown. Exceptions listed in ``ignore`` are
    answers from a working provider and count as successes.
    """

    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half-open"

    def __init__(
        self,
        name: str = "provider",
        failure_threshold: int = BREAKER_FAILURE_THRESHOLD,
        reset_timeout: float = BREAKER_RESET_TIMEOUT,
        clock: Callable[[], float] = time.monotonic,
        ignore: tuple[type[BaseException], ...] = (),
    ):
        self.name = name
        self.failure_threshold = failure_threshold
        self.reset_timeout = reset_timeout
        self.ignore = ignore
        self._clock = clock
        self._lock = threading.Lock()
        self._failures = 0
        self._opened_at: float | None = None
        self._trial_running = False

    @property
    def state(self) -> str:
        with self._lock:
            return self._state()

    def _state(self) -> str:
        if self._opened_at is None:
            return self.CLOSED
        if self._clock() - self._opened_at >= self.reset_timeout:
            return self.HALF_OPEN
        return self.OPEN

    def _unhealthy(self) -> ProviderUnhealthy:
        return ProviderUnhealthy(
            f"{self.name} is unhealthy: circuit open after {self._failures} consecutive failures"
        )

    def call(self, fn: Callable[..., T], *args, **kwargs) -> T:
        with self._lock:
            state = self._state()
            if state == self.OPEN:
                raise self._unhealthy()
            trial = state == self.HALF_OPEN
            if trial:
                if self._trial_running:
                    raise self._unhealthy()
                self._trial_running = True
        try:
            result = fn(*args, **kwargs)
        except self.ignore:
            self._record_success(trial)
            raise
        except Exception:
            self._record_failure(trial)
            raise
        self._record_success(trial)
        return result

    def _record_failure(self, trial: bool = False) -> None:
        with self._lock:
            if trial:
                self._trial_running = False
            half_open = self._state() == self.HALF_OPEN
            self._failures += 1
            if trial or half_open or self._failures >= self.failure_threshold:
                if self._opened_at is None or trial or half_open:
                    logger.warning("Circuit %s opened after %d failures", self.name, self._failures)
                self._opened_at = self._clock()

    def _record_success(self, trial: bool = False) -> None:
        with self._lock:
            if trial:
                self._trial_running = False
            if self._opened_at is not None:
                logger.info("Circuit %s closed", self.name)
            self._failures = 0
            self._opened_at = None
