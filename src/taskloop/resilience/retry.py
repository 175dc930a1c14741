"""Exponential backoff schedule for transient provider failures."""

from __future__ import annotations

import random

from taskloop.config import RetryConfig


class RetryPolicy:
    def __init__(self, config: RetryConfig):
        self._config = config

    @property
    def max_attempts(self) -> int:
        return self._config.max_attempts

    def delay_for(self, attempt: int) -> float:
        """Seconds to wait after failed attempt number *attempt* (1-based)."""
        base = self._config.initial_backoff_seconds * (self._config.multiplier ** (attempt - 1))
        base = min(base, self._config.max_backoff_seconds)
        jitter = random.uniform(0, self._config.jitter_seconds) if self._config.jitter_seconds else 0.0
        return base + jitter
