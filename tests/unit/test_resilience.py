"""Unit tests for the resilience layer: token bucket, retry, breaker, pipeline."""

from __future__ import annotations

import asyncio
import random
from unittest.mock import AsyncMock

import pytest

from src.resilience import (
    CircuitBreaker,
    CircuitState,
    ResiliencePipeline,
    RetryPolicy,
    TokenBucket,
    VoterRateLimiter,
)
from src.utils.errors import (
    CircuitOpenError,
    PermanentSourceError,
    RateLimitedError,
    TransientSourceError,
)


class FakeClock:
    def __init__(self, now: float = 0.0) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now


# ======================================================================
# TokenBucket
# ======================================================================


class TestTokenBucket:
    @pytest.mark.asyncio
    async def test_burst_plus_one_delays_exactly_one_caller(self) -> None:
        clock = FakeClock()
        sleep = AsyncMock()
        bucket = TokenBucket(rate=2.0, burst=3, max_wait=10.0, clock=clock, sleep=sleep)

        waits = [await bucket.acquire() for _ in range(4)]

        assert waits[:3] == [0.0, 0.0, 0.0]
        assert waits[3] == pytest.approx(0.5)
        sleep.assert_awaited_once()
        assert sleep.await_args.args[0] == pytest.approx(0.5)

    @pytest.mark.asyncio
    async def test_refills_with_elapsed_time(self) -> None:
        clock = FakeClock()
        sleep = AsyncMock()
        bucket = TokenBucket(rate=1.0, burst=1, clock=clock, sleep=sleep)

        await bucket.acquire()
        clock.now = 1.0
        assert await bucket.acquire() == 0.0
        sleep.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_refill_never_exceeds_burst(self) -> None:
        clock = FakeClock()
        bucket = TokenBucket(rate=5.0, burst=2, clock=clock, sleep=AsyncMock())
        clock.now = 100.0
        assert bucket.available_tokens == pytest.approx(2.0)

    @pytest.mark.asyncio
    async def test_wait_beyond_max_wait_raises_and_returns_token(self) -> None:
        clock = FakeClock()
        bucket = TokenBucket(rate=1.0, burst=1, max_wait=0.5, clock=clock, sleep=AsyncMock())

        await bucket.acquire()
        with pytest.raises(RateLimitedError):
            await bucket.acquire()
        assert bucket.available_tokens == pytest.approx(0.0)

    def test_rejects_non_positive_rate(self) -> None:
        with pytest.raises(ValueError):
            TokenBucket(rate=0, burst=1)

    def test_try_acquire_is_non_blocking(self) -> None:
        bucket = TokenBucket(rate=1.0, burst=1, clock=FakeClock())
        assert bucket.try_acquire() is True
        assert bucket.try_acquire() is False

    def test_refund_returns_token_up_to_burst(self) -> None:
        bucket = TokenBucket(rate=1.0, burst=2, clock=FakeClock())
        assert bucket.try_acquire() is True
        bucket.refund()
        bucket.refund()
        assert bucket.available_tokens == 2.0


class TestVoterRateLimiter:
    def test_rejects_after_burst(self) -> None:
        limiter = VoterRateLimiter(rate=1.0, burst=2, clock=FakeClock())
        limiter.check("alice")
        limiter.check("alice")
        with pytest.raises(RateLimitedError):
            limiter.check("alice")

    def test_voters_have_independent_buckets(self) -> None:
        limiter = VoterRateLimiter(rate=1.0, burst=1, clock=FakeClock())
        limiter.check("alice")
        limiter.check("bob")
        with pytest.raises(RateLimitedError):
            limiter.check("alice")

    def test_idle_voter_bucket_is_dropped(self) -> None:
        clock = FakeClock()
        limiter = VoterRateLimiter(rate=1.0, burst=2, clock=clock)
        limiter.check("alice")
        clock.now = 1.0
        limiter.check("bob")
        assert limiter.tracked_voters == 2

        clock.now = 2.5
        limiter.check("carol")
        assert limiter.tracked_voters == 2

        clock.now = 10.0
        limiter.check("dave")
        assert limiter.tracked_voters == 1

    def test_returning_voter_after_eviction_gets_full_burst(self) -> None:
        clock = FakeClock()
        limiter = VoterRateLimiter(rate=1.0, burst=2, clock=clock)
        limiter.check("alice")
        limiter.check("alice")
        clock.now = 5.0
        limiter.check("alice")
        limiter.check("alice")
        with pytest.raises(RateLimitedError):
            limiter.check("alice")


# ======================================================================
# RetryPolicy
# ======================================================================


class TestRetryPolicy:
    def test_exponential_growth_without_jitter(self) -> None:
        policy = RetryPolicy(base_delay=0.5, max_delay=8.0, jitter=0.0)
        assert [policy.compute_backoff(n) for n in range(4)] == [0.5, 1.0, 2.0, 4.0]

    def test_delay_is_capped(self) -> None:
        policy = RetryPolicy(base_delay=0.5, max_delay=8.0, jitter=0.0)
        assert policy.compute_backoff(10) == 8.0

    def test_retry_after_acts_as_floor(self) -> None:
        policy = RetryPolicy(base_delay=0.5, max_delay=8.0, jitter=0.0)
        assert policy.compute_backoff(0, retry_after=3.0) == 3.0

    def test_retry_after_still_capped(self) -> None:
        policy = RetryPolicy(base_delay=0.5, max_delay=8.0, jitter=0.0)
        assert policy.compute_backoff(0, retry_after=120.0) == 8.0

    def test_jitter_stays_within_band(self) -> None:
        policy = RetryPolicy(base_delay=0.5, max_delay=8.0, jitter=0.25, rng=random.Random(42))
        for _ in range(50):
            assert 1.5 <= policy.compute_backoff(2) <= 2.5

    def test_invalid_jitter_rejected(self) -> None:
        with pytest.raises(ValueError):
            RetryPolicy(jitter=1.5)


# ======================================================================
# CircuitBreaker
# ======================================================================


class TestCircuitBreaker:
    def _breaker(self, clock: FakeClock) -> CircuitBreaker:
        return CircuitBreaker("spotify", failure_threshold=2, reset_timeout=10.0, clock=clock)

    def test_opens_after_threshold_consecutive_failures(self) -> None:
        breaker = self._breaker(FakeClock())
        breaker.record_failure()
        assert breaker.state is CircuitState.CLOSED
        breaker.record_failure()
        assert breaker.state is CircuitState.OPEN

        with pytest.raises(CircuitOpenError):
            breaker.before_call()
        assert breaker.rejected_calls == 1

    def test_success_resets_failure_streak(self) -> None:
        breaker = self._breaker(FakeClock())
        breaker.record_failure()
        breaker.record_success()
        breaker.record_failure()
        assert breaker.state is CircuitState.CLOSED

    def test_half_open_admits_single_trial(self) -> None:
        clock = FakeClock()
        breaker = self._breaker(clock)
        breaker.record_failure()
        breaker.record_failure()

        clock.now = 10.0
        breaker.before_call()
        assert breaker.state is CircuitState.HALF_OPEN
        with pytest.raises(CircuitOpenError):
            breaker.before_call()

        breaker.record_success()
        assert breaker.state is CircuitState.CLOSED
        breaker.before_call()

    def test_failed_trial_reopens_and_restarts_timer(self) -> None:
        clock = FakeClock()
        breaker = self._breaker(clock)
        breaker.record_failure()
        breaker.record_failure()

        clock.now = 10.0
        breaker.before_call()
        breaker.record_failure()
        assert breaker.state is CircuitState.OPEN

        clock.now = 15.0
        with pytest.raises(CircuitOpenError):
            breaker.before_call()

    def test_reject_if_open_leaves_trial_slot_free(self) -> None:
        clock = FakeClock()
        breaker = self._breaker(clock)
        breaker.record_failure()
        breaker.record_failure()
        with pytest.raises(CircuitOpenError):
            breaker.reject_if_open()

        clock.now = 10.0
        breaker.reject_if_open()
        breaker.before_call()
        assert breaker.state is CircuitState.HALF_OPEN
        with pytest.raises(CircuitOpenError):
            breaker.reject_if_open()

    def test_stats_report_state_value(self) -> None:
        stats = self._breaker(FakeClock()).get_stats()
        assert stats["state"] == "closed"
        assert stats["rejected_calls"] == 0


# ======================================================================
# ResiliencePipeline
# ======================================================================


def _pipeline(max_attempts: int = 3, failure_threshold: int = 5) -> tuple[ResiliencePipeline, AsyncMock]:
    sleep = AsyncMock()
    pipeline = ResiliencePipeline(
        name="ticketmaster",
        limiter=TokenBucket(rate=100.0, burst=100, clock=FakeClock(), sleep=AsyncMock()),
        breaker=CircuitBreaker(
            "ticketmaster", failure_threshold=failure_threshold, reset_timeout=60.0, clock=FakeClock()
        ),
        retry=RetryPolicy(max_attempts=max_attempts, base_delay=0.5, jitter=0.0),
        sleep=sleep,
    )
    return pipeline, sleep


class TestResiliencePipeline:
    @pytest.mark.asyncio
    async def test_transient_failures_are_retried_with_backoff(self) -> None:
        pipeline, sleep = _pipeline()
        operation = AsyncMock(
            side_effect=[TransientSourceError(status_code=503), TransientSourceError(), {"ok": True}]
        )

        result = await pipeline.call(operation, "search")

        assert result == {"ok": True}
        assert pipeline.attempts == 3
        assert pipeline.retries == 2
        assert [c.args[0] for c in sleep.await_args_list] == [0.5, 1.0]
        assert pipeline.breaker.state is CircuitState.CLOSED

    @pytest.mark.asyncio
    async def test_retry_after_header_is_honoured(self) -> None:
        pipeline, sleep = _pipeline()
        operation = AsyncMock(side_effect=[TransientSourceError(status_code=429, retry_after=4.0), "done"])

        assert await pipeline.call(operation) == "done"
        sleep.assert_awaited_once_with(4.0)

    @pytest.mark.asyncio
    async def test_permanent_error_is_not_retried(self) -> None:
        pipeline, sleep = _pipeline()
        operation = AsyncMock(side_effect=PermanentSourceError(status_code=404))

        with pytest.raises(PermanentSourceError):
            await pipeline.call(operation)

        assert pipeline.attempts == 1
        sleep.assert_not_awaited()
        assert pipeline.breaker.get_stats()["consecutive_failures"] == 0

    @pytest.mark.asyncio
    async def test_exhausted_retries_surface_last_error(self) -> None:
        pipeline, _ = _pipeline(max_attempts=2)
        operation = AsyncMock(side_effect=TransientSourceError(message="still down"))

        with pytest.raises(TransientSourceError, match="still down"):
            await pipeline.call(operation)
        assert pipeline.attempts == 3

    @pytest.mark.asyncio
    async def test_open_breaker_fails_fast_without_calling(self) -> None:
        pipeline, _ = _pipeline(max_attempts=5, failure_threshold=2)
        failing = AsyncMock(side_effect=TransientSourceError())

        with pytest.raises(CircuitOpenError):
            await pipeline.call(failing)
        assert failing.await_count == 2

        untouched = AsyncMock(return_value="never")
        with pytest.raises(CircuitOpenError):
            await pipeline.call(untouched)
        untouched.assert_not_awaited()
        assert pipeline.breaker.rejected_calls == 2

    @pytest.mark.asyncio
    async def test_breaker_opened_during_token_wait_blocks_the_call(self) -> None:
        limiter = TokenBucket(rate=20.0, burst=1, max_wait=1.0)
        pipeline = ResiliencePipeline(
            name="ticketmaster",
            limiter=limiter,
            breaker=CircuitBreaker("ticketmaster", failure_threshold=1, reset_timeout=60.0),
            retry=RetryPolicy(max_attempts=0),
        )
        seen_states: list[str] = []

        async def operation() -> str:
            seen_states.append(pipeline.breaker.state.value)
            await asyncio.sleep(0)
            raise TransientSourceError(status_code=503)

        first, second = await asyncio.gather(
            pipeline.call(operation), pipeline.call(operation), return_exceptions=True
        )

        assert isinstance(first, TransientSourceError)
        assert isinstance(second, CircuitOpenError)
        assert seen_states == ["closed"]
        assert pipeline.attempts == 1
        assert pipeline.breaker.rejected_calls == 1
        assert limiter.available_tokens > 0

    @pytest.mark.asyncio
    async def test_stats_include_breaker(self) -> None:
        pipeline, _ = _pipeline()
        await pipeline.call(AsyncMock(return_value=1))
        stats = pipeline.get_stats()
        assert stats["source"] == "ticketmaster"
        assert stats["attempts"] == 1
        assert stats["breaker"]["state"] == "closed"
