"""Resilience primitives: outbound retry, batch breaker and rate-limited worker."""

from .breaker import BatchErrorBreaker, BatchErrorBreakerConfig, BreakerState
from .retry import RetryConfig, call_with_retry
from .worker import RateLimitedWorker

__all__ = [
    "BatchErrorBreaker",
    "BatchErrorBreakerConfig",
    "BreakerState",
    "RateLimitedWorker",
    "RetryConfig",
    "call_with_retry",
]
