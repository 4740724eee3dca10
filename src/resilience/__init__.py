"""Resilience policies wrapped around every outbound source call.

Re-exports
----------
TokenBucket, VoterRateLimiter
    Token-bucket rate limiting (blocking with bounded wait / non-blocking).
RetryPolicy
    Exponential backoff with jitter for transient failures.
CircuitBreaker, CircuitState
    Per-source fail-fast guard.
ResiliencePipeline
    The composition applied by the source clients.
"""

from src.resilience.circuit_breaker import CircuitBreaker, CircuitState
from src.resilience.pipeline import ResiliencePipeline
from src.resilience.rate_limiter import TokenBucket, VoterRateLimiter
from src.resilience.retry import RetryPolicy

__all__ = [
    "CircuitBreaker",
    "CircuitState",
    "ResiliencePipeline",
    "RetryPolicy",
    "TokenBucket",
    "VoterRateLimiter",
]
