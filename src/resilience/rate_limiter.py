"""Token-bucket rate limiting for outbound source calls and inbound votes.

# ─── HOW THE BUCKET WORKS ─────────────────────────────────────────────
#
#   capacity = burst            tokens refill at ``rate`` per second
#
#   acquire():
#     1. refill from elapsed monotonic time (never above burst)
#     2. take one token -- the balance may go negative, which is a
#        *reservation*: the caller owns the slot at ``-balance / rate``
#        seconds from now
#     3. if that wait exceeds ``max_wait`` the reservation is rolled back
#        and RateLimitedError is raised instead of queueing forever
#     4. sleep for the wait OUTSIDE any bookkeeping
#
# Steps 1-3 contain no ``await``, so on a single event loop they cannot
# interleave with another acquire() and need no lock.  Because waiters
# reserve in arrival order, ``burst + 1`` simultaneous callers get
# ``burst`` immediate tokens and one caller delayed by ``1 / rate``.
# ──────────────────────────────────────────────────────────────────────
"""

from __future__ import annotations

import asyncio
import time
from collections import OrderedDict
from collections.abc import Awaitable, Callable

from src.utils.errors import RateLimitedError
from src.utils.logging import get_logger

logger = get_logger(__name__)


class TokenBucket:
    """One bucket per external source (or per voter on the vote path)."""

    def __init__(
        self,
        rate: float,
        burst: int,
        max_wait: float = 10.0,
        name: str = "default",
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        if rate <= 0:
            raise ValueError(f"rate must be positive, got {rate}")
        if burst < 1:
            raise ValueError(f"burst must be >= 1, got {burst}")
        self._rate = float(rate)
        self._burst = float(burst)
        self._max_wait = max_wait
        self._name = name
        self._clock = clock
        self._sleep = sleep
        self._tokens = float(burst)
        self._last_refill = clock()

    @property
    def name(self) -> str:
        return self._name

    @property
    def rate(self) -> float:
        return self._rate

    @property
    def available_tokens(self) -> float:
        """Current balance after refill; negative while callers hold reservations."""
        self._refill()
        return self._tokens

    def _refill(self) -> None:
        now = self._clock()
        elapsed = max(0.0, now - self._last_refill)
        self._tokens = min(self._burst, self._tokens + elapsed * self._rate)
        self._last_refill = now

    def _reserve(self) -> float:
        """Take one token and return how long the caller must wait for it."""
        self._refill()
        self._tokens -= 1.0
        if self._tokens >= 0:
            return 0.0
        return -self._tokens / self._rate

    async def acquire(self) -> float:
        """Wait for one token.  Returns the seconds waited.

        Raises
        ------
        RateLimitedError
            If the token would not be available within ``max_wait``.
        """
        wait = self._reserve()
        if wait > self._max_wait:
            self._tokens += 1.0
            logger.warning(
                "rate_limit_wait_exceeded",
                limiter=self._name,
                wait=round(wait, 3),
                max_wait=self._max_wait,
            )
            raise RateLimitedError(
                message=f"No token within {self._max_wait:.1f}s (needed {wait:.2f}s)",
                provider_name=self._name,
            )
        if wait > 0:
            logger.debug("rate_limit_wait", limiter=self._name, wait=round(wait, 3))
            await self._sleep(wait)
        return wait

    def refund(self) -> None:
        """Return a token whose call was never made."""
        self._refill()
        self._tokens = min(self._burst, self._tokens + 1.0)

    def try_acquire(self) -> bool:
        """Take a token only if one is available right now."""
        self._refill()
        if self._tokens >= 1.0:
            self._tokens -= 1.0
            return True
        return False


class VoterRateLimiter:
    """Non-blocking per-voter buckets for the vote submission path.

    Votes are user-facing, so an exhausted bucket rejects immediately with
    :class:`RateLimitedError` rather than delaying the response.  A bucket
    untouched for ``burst / rate`` seconds has refilled completely and is
    dropped; a returning voter gets an identical fresh one.
    """

    def __init__(
        self,
        rate: float,
        burst: int,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._rate = rate
        self._burst = burst
        self._clock = clock
        self._idle_after = burst / rate
        # Least recently seen first: voter_id -> (bucket, last_seen).
        self._buckets: OrderedDict[str, tuple[TokenBucket, float]] = OrderedDict()

    @property
    def tracked_voters(self) -> int:
        return len(self._buckets)

    def check(self, voter_id: str) -> None:
        now = self._clock()
        self._evict_idle(now)
        entry = self._buckets.pop(voter_id, None)
        if entry is None:
            bucket = TokenBucket(
                rate=self._rate,
                burst=self._burst,
                max_wait=0.0,
                name=f"voter:{voter_id}",
                clock=self._clock,
            )
        else:
            bucket = entry[0]
        self._buckets[voter_id] = (bucket, now)
        if not bucket.try_acquire():
            raise RateLimitedError(message="Too many votes, slow down")

    def _evict_idle(self, now: float) -> None:
        while self._buckets:
            voter_id, (_, last_seen) = next(iter(self._buckets.items()))
            if now - last_seen < self._idle_after:
                return
            del self._buckets[voter_id]
