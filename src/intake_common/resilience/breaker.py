"""Failure-count breaker for batch runs.

Unlike a service circuit breaker, a batch breaker never half-opens: once the
failure threshold is reached the remaining rows of the run are abandoned.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum


class BreakerState(str, Enum):
    CLOSED = "closed"
    OPEN = "open"


@dataclass(slots=True)
class BatchErrorBreakerConfig:
    failure_threshold: int = 20


class BatchErrorBreaker:
    """Counts row failures and opens once ``failure_threshold`` is reached."""

    def __init__(self, name: str, config: BatchErrorBreakerConfig | None = None) -> None:
        self.name = name
        self.config = config or BatchErrorBreakerConfig()
        self._state = BreakerState.CLOSED
        self._failure_count = 0
        self._success_count = 0
        self._logger = logging.getLogger(f"intake.batch_breaker.{name}")

    @property
    def state(self) -> BreakerState:
        return self._state

    @property
    def failure_count(self) -> int:
        return self._failure_count

    @property
    def success_count(self) -> int:
        return self._success_count

    def allow_request(self) -> bool:
        return self._state == BreakerState.CLOSED

    def record_success(self) -> None:
        self._success_count += 1

    def record_failure(self) -> None:
        self._failure_count += 1
        if self._state == BreakerState.CLOSED and self._failure_count >= self.config.failure_threshold:
            self._state = BreakerState.OPEN
            self._logger.warning(
                "Batch breaker '%s' opened after %d failures", self.name, self._failure_count
            )


__all__ = [
    "BatchErrorBreaker",
    "BatchErrorBreakerConfig",
    "BreakerState",
]
