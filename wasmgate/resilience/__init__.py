"""
Wasmgate Resilience

Retry with backoff for transient network failures.
"""

from wasmgate.resilience.retry import (
    ExponentialBackoff,
    RetryConfig,
    RetryMetrics,
    RetryPolicy,
    is_transient,
)

__all__ = [
    "ExponentialBackoff",
    "RetryConfig",
    "RetryMetrics",
    "RetryPolicy",
    "is_transient",
]
