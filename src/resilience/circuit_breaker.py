"""Per-source circuit breaker.

State machine::

    CLOSED --(failure_threshold consecutive failures)--> OPEN
    OPEN   --(reset_timeout elapsed, next call)--------> HALF_OPEN (one trial)
    HALF_OPEN --(trial succeeds)--> CLOSED
    HALF_OPEN --(trial fails)-----> OPEN (timer restarts)

While OPEN, and while a HALF_OPEN trial is in flight, :meth:`before_call`
raises :class:`CircuitOpenError` without touching the network.  Each
source gets its own instance, built by ``src.main`` and injected, so tests
construct isolated breakers with a fake clock.
"""

from __future__ import annotations

import time
from collections.abc import Callable
from enum import Enum
from typing import Any

from src.utils.errors import CircuitOpenError
from src.utils.logging import get_logger

logger = get_logger(__name__)


class CircuitState(str, Enum):  # noqa: UP042 -- StrEnum requires Python 3.11+
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


class CircuitBreaker:
    """Consecutive-failure circuit breaker with a single half-open trial."""

    def __init__(
        self,
        name: str,
        failure_threshold: int = 5,
        reset_timeout: float = 60.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if failure_threshold < 1:
            raise ValueError(f"failure_threshold must be >= 1, got {failure_threshold}")
        self._name = name
        self._failure_threshold = failure_threshold
        self._reset_timeout = reset_timeout
        self._clock = clock
        self._state = CircuitState.CLOSED
        self._consecutive_failures = 0
        self._opened_at: float | None = None
        self._trial_in_flight = False
        self._rejected_calls = 0

    @property
    def name(self) -> str:
        return self._name

    @property
    def state(self) -> CircuitState:
        return self._state

    @property
    def rejected_calls(self) -> int:
        """Total calls failed fast since construction."""
        return self._rejected_calls

    def before_call(self) -> None:
        """Gate one call.  Raises :class:`CircuitOpenError` to fail fast."""
        if self._state is CircuitState.OPEN:
            assert self._opened_at is not None
            if self._clock() - self._opened_at >= self._reset_timeout:
                self._transition(CircuitState.HALF_OPEN)
                self._trial_in_flight = True
                return
            self._reject()
        if self._state is CircuitState.HALF_OPEN:
            if self._trial_in_flight:
                self._reject()
            self._trial_in_flight = True

    def reject_if_open(self) -> None:
        """Fail fast like :meth:`before_call`, but never claim the half-open trial."""
        if self._state is CircuitState.OPEN:
            assert self._opened_at is not None
            if self._clock() - self._opened_at < self._reset_timeout:
                self._reject()
        elif self._state is CircuitState.HALF_OPEN and self._trial_in_flight:
            self._reject()

    def record_success(self) -> None:
        self._consecutive_failures = 0
        self._trial_in_flight = False
        if self._state is not CircuitState.CLOSED:
            self._opened_at = None
            self._transition(CircuitState.CLOSED)

    def record_failure(self) -> None:
        self._trial_in_flight = False
        if self._state is CircuitState.HALF_OPEN:
            self._open()
            return
        self._consecutive_failures += 1
        if self._consecutive_failures >= self._failure_threshold:
            self._open()

    def abandon_trial(self) -> None:
        """Give back a half-open trial slot whose call never completed."""
        self._trial_in_flight = False

    def reset(self) -> None:
        self._state = CircuitState.CLOSED
        self._consecutive_failures = 0
        self._opened_at = None
        self._trial_in_flight = False

    def get_stats(self) -> dict[str, Any]:
        return {
            "name": self._name,
            "state": self._state.value,
            "consecutive_failures": self._consecutive_failures,
            "rejected_calls": self._rejected_calls,
            "failure_threshold": self._failure_threshold,
            "reset_timeout": self._reset_timeout,
        }

    def _open(self) -> None:
        self._opened_at = self._clock()
        self._transition(CircuitState.OPEN)

    def _reject(self) -> None:
        self._rejected_calls += 1
        raise CircuitOpenError(
            message=f"Circuit breaker {self._name} is {self._state.value}",
            provider_name=self._name,
        )

    def _transition(self, new_state: CircuitState) -> None:
        if new_state is self._state:
            return
        logger.warning(
            "circuit_breaker_transition",
            breaker=self._name,
            from_state=self._state.value,
            to_state=new_state.value,
            consecutive_failures=self._consecutive_failures,
        )
        self._state = new_state
