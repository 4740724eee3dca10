"""Exponential backoff with jitter for transient source failures."""

from __future__ import annotations

import random
from dataclasses import dataclass, field


@dataclass
class RetryPolicy:
    """How many times, and how far apart, a transient failure is retried.

    ``max_attempts`` counts retries after the first try, so the default of
    3 allows four calls in total.  The delay before retry *n* (0-based) is
    ``base_delay * 2**n`` capped at ``max_delay``, then moved by up to
    ``± jitter`` of itself, then capped again.
    """

    max_attempts: int = 3
    base_delay: float = 0.5
    max_delay: float = 8.0
    jitter: float = 0.25
    rng: random.Random = field(default_factory=random.Random)

    def __post_init__(self) -> None:
        if self.max_attempts < 0:
            raise ValueError(f"max_attempts must be >= 0, got {self.max_attempts}")
        if not 0.0 <= self.jitter <= 1.0:
            raise ValueError(f"jitter must be within [0, 1], got {self.jitter}")

    def compute_backoff(self, attempt: int, retry_after: float | None = None) -> float:
        """Return the delay in seconds before retry number *attempt*.

        A provider ``Retry-After`` hint raises the delay to at least that
        value, still bounded by ``max_delay``.
        """
        delay = min(self.max_delay, self.base_delay * (2 ** attempt))
        if self.jitter:
            spread = delay * self.jitter
            delay += self.rng.uniform(-spread, spread)
        if retry_after is not None:
            delay = max(delay, retry_after)
        return max(0.0, min(self.max_delay, delay))
