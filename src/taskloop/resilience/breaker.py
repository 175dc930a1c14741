"""Failure-ratio circuit breaker over a count-based sliding window."""

from __future__ import annotations

import threading
import time
from collections import deque
from enum import StrEnum
from typing import Callable, Optional

from taskloop.config import CircuitBreakerConfig
from taskloop.log import get_logger

logger = get_logger(__name__)


class BreakerState(StrEnum):
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


class CircuitBreaker:
    """Opens when the failure ratio of the last ``window_size`` calls crosses the threshold.

    While open every call is refused. After ``cooldown_seconds`` up to
    ``half_open_max_calls`` trial calls are let through; a failure re-opens the
    breaker, enough successes close it and reset the window.
    """

    def __init__(
        self,
        name: str,
        config: CircuitBreakerConfig,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.name = name
        self._config = config
        self._clock = clock
        self._lock = threading.Lock()
        self._state = BreakerState.CLOSED
        self._window: deque[bool] = deque(maxlen=config.window_size)
        self._opened_at = 0.0
        self._half_open_in_flight = 0
        self._half_open_successes = 0
        self._last_error: Optional[str] = None

    @property
    def state(self) -> BreakerState:
        with self._lock:
            self._maybe_half_open()
            return self._state

    @property
    def cooldown_seconds(self) -> float:
        return self._config.cooldown_seconds

    def allow_request(self) -> bool:
        with self._lock:
            self._maybe_half_open()
            if self._state == BreakerState.CLOSED:
                return True
            if self._state == BreakerState.OPEN:
                return False
            if self._half_open_in_flight < self._config.half_open_max_calls:
                self._half_open_in_flight += 1
                return True
            return False

    def record_success(self) -> None:
        with self._lock:
            if self._state == BreakerState.HALF_OPEN:
                self._half_open_in_flight = max(0, self._half_open_in_flight - 1)
                self._half_open_successes += 1
                if self._half_open_successes >= self._config.half_open_max_calls:
                    self._transition(BreakerState.CLOSED)
                return
            self._window.append(True)

    def record_failure(self, error: str) -> None:
        with self._lock:
            self._last_error = error
            if self._state == BreakerState.HALF_OPEN:
                self._transition(BreakerState.OPEN)
                return
            if self._state == BreakerState.OPEN:
                return
            self._window.append(False)
            if self._should_open():
                self._transition(BreakerState.OPEN)

    def release(self) -> None:
        """Return a half-open permit for a call whose outcome does not count."""
        with self._lock:
            if self._state == BreakerState.HALF_OPEN:
                self._half_open_in_flight = max(0, self._half_open_in_flight - 1)

    def failure_rate(self) -> float:
        with self._lock:
            return self._failure_rate()

    def status(self) -> dict:
        with self._lock:
            self._maybe_half_open()
            return {
                "name": self.name,
                "state": str(self._state),
                "calls_in_window": len(self._window),
                "failure_rate": round(self._failure_rate(), 3),
                "last_error": self._last_error,
            }

    def _failure_rate(self) -> float:
        if not self._window:
            return 0.0
        failures = sum(1 for ok in self._window if not ok)
        return failures / len(self._window)

    def _should_open(self) -> bool:
        required = min(self._config.minimum_calls, self._config.window_size)
        if len(self._window) < required:
            return False
        return self._failure_rate() >= self._config.failure_rate_threshold

    def _maybe_half_open(self) -> None:
        if (
            self._state == BreakerState.OPEN
            and self._clock() - self._opened_at >= self._config.cooldown_seconds
        ):
            self._transition(BreakerState.HALF_OPEN)

    def _transition(self, new_state: BreakerState) -> None:
        previous = self._state
        self._state = new_state
        self._half_open_in_flight = 0
        self._half_open_successes = 0
        if new_state == BreakerState.OPEN:
            self._opened_at = self._clock()
        elif new_state == BreakerState.CLOSED:
            self._window.clear()
        logger.warning(
            "circuit_breaker_transition",
            breaker=self.name,
            from_state=str(previous),
            to_state=str(new_state),
            last_error=self._last_error,
        )
