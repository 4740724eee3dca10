"""Composition of breaker, rate limiter and retry around one outbound call.

Every source client routes each HTTP request through
:meth:`ResiliencePipeline.call`::

    for each attempt:
        breaker.reject_if_open()  → CircuitOpenError (no wait, no I/O) while open
        limiter.acquire()         → RateLimitedError past max_wait
        breaker.before_call()     → re-checked after the wait; the token is refunded
        operation()
          ok                      → breaker.record_success(), return
          TransientSourceError    → breaker.record_failure(), backoff, retry
          PermanentSourceError    → source answered: breaker success, raise
          anything else           → release a half-open trial, raise

Only :class:`TransientSourceError` is retried, and :class:`CircuitOpenError`
(itself transient) is always surfaced at once.  No lock is held while
sleeping for a token or a backoff.
"""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable
from typing import Any, TypeVar

from src.resilience.circuit_breaker import CircuitBreaker
from src.resilience.rate_limiter import TokenBucket
from src.resilience.retry import RetryPolicy
from src.utils.errors import CircuitOpenError, PermanentSourceError, TransientSourceError
from src.utils.logging import get_logger

_T = TypeVar("_T")


class ResiliencePipeline:
    """Per-source bundle of :class:`TokenBucket`, :class:`RetryPolicy` and :class:`CircuitBreaker`."""

    def __init__(
        self,
        name: str,
        limiter: TokenBucket,
        breaker: CircuitBreaker,
        retry: RetryPolicy,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self._name = name
        self._limiter = limiter
        self._breaker = breaker
        self._retry = retry
        self._sleep = sleep
        self._logger = get_logger(__name__)
        # Counters read by the orchestrator to tell "breaker open all cycle"
        # apart from "source answered but failed".
        self.attempts = 0
        self.retries = 0

    @property
    def name(self) -> str:
        return self._name

    @property
    def breaker(self) -> CircuitBreaker:
        return self._breaker

    @property
    def limiter(self) -> TokenBucket:
        return self._limiter

    async def call(self, operation: Callable[[], Awaitable[_T]], op_name: str = "call") -> _T:
        """Run *operation* under the full resilience policy and return its result.

        Raises
        ------
        CircuitOpenError
            The breaker is open (or its half-open trial is taken).
        RateLimitedError
            No token became available within the limiter's max wait.
        TransientSourceError
            The last transient failure once retries are exhausted.
        PermanentSourceError
            Immediately, without retry.
        """
        attempt = 0
        while True:
            self._breaker.reject_if_open()
            await self._limiter.acquire()
            # The breaker may have opened while this call waited for its token.
            try:
                self._breaker.before_call()
            except CircuitOpenError:
                self._limiter.refund()
                raise
            try:
                self.attempts += 1
                result = await operation()
            except CircuitOpenError:
                self._breaker.abandon_trial()
                raise
            except TransientSourceError as exc:
                self._breaker.record_failure()
                if attempt >= self._retry.max_attempts:
                    self._logger.error(
                        "source_call_retries_exhausted",
                        source=self._name,
                        op=op_name,
                        attempts=attempt + 1,
                        error=str(exc),
                    )
                    raise
                delay = self._retry.compute_backoff(attempt, exc.retry_after)
                self._logger.warning(
                    "source_call_retrying",
                    source=self._name,
                    op=op_name,
                    attempt=attempt + 1,
                    delay=round(delay, 3),
                    status_code=exc.status_code,
                    error=str(exc),
                )
                attempt += 1
                self.retries += 1
                await self._sleep(delay)
                continue
            except PermanentSourceError:
                self._breaker.record_success()
                raise
            except BaseException:
                self._breaker.abandon_trial()
                raise
            self._breaker.record_success()
            return result

    def get_stats(self) -> dict[str, Any]:
        return {
            "source": self._name,
            "attempts": self.attempts,
            "retries": self.retries,
            "available_tokens": round(self._limiter.available_tokens, 2),
            "breaker": self._breaker.get_stats(),
        }
