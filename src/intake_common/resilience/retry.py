"""Retry policy for outbound calls.

Only transient failures (timeouts, 5xx, no response) are retried, with a small
fixed delay between attempts.
"""
from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Any, TypeVar

from tenacity import (  # type: ignore[import]
    AsyncRetrying,
    after_log,
    before_log,
    retry_if_exception,
    stop_after_attempt,
    wait_fixed,
)

from intake_common.errors import exception_is_transient

logger = logging.getLogger(__name__)
T = TypeVar("T")


@dataclass(slots=True)
class RetryConfig:
    max_attempts: int = 3
    delay: float = 1.0


def _retry_kwargs(config: RetryConfig) -> dict[str, Any]:
    return {
        "stop": stop_after_attempt(config.max_attempts),
        "wait": wait_fixed(config.delay),
        "retry": retry_if_exception(exception_is_transient),
        "reraise": True,
        "before": before_log(logger, logging.DEBUG),
        "after": after_log(logger, logging.WARNING),
    }


async def call_with_retry(
    func: Callable[..., Awaitable[T]], *args: Any, config: RetryConfig | None = None, **kwargs: Any
) -> T:
    """Await ``func`` under the transient-only retry policy."""
    retrying = AsyncRetrying(**_retry_kwargs(config or RetryConfig()))
    async for attempt in retrying:
        with attempt:
            return await func(*args, **kwargs)
    raise AssertionError("unreachable")  # pragma: no cover
