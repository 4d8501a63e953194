"""Circuit breaker guarding calls into the external AI service.

One breaker instance is constructed at startup and handed by reference to
every component that calls the AI service (the financial analyzer today).
When the service fails repeatedly the breaker opens and callers fall back to
cheaper paths instead of piling retries onto a broken dependency.

States:
- CLOSED: requests flow; consecutive failures are counted
- OPEN: requests are refused until `timeout_seconds` has passed since the
  last failure
- HALF_OPEN: one trial call at a time is admitted; `success_threshold` successes
  close the circuit, any failure re-opens it. A trial call whose outcome is never
  recorded stops blocking others after `timeout_seconds`

Usage:
    from mailflow.core.circuit_breaker import CircuitBreaker

    breaker = CircuitBreaker(failure_threshold=3, timeout_seconds=900)

    if breaker.can_make_request():
        try:
            result = call_ai()
            breaker.record_success()
        except AnalysisError as e:
            breaker.record_failure(e)
"""

from __future__ import annotations

import threading
import time
from collections.abc import Callable
from dataclasses import dataclass
from enum import Enum

from mailflow.core.logging import get_logger

logger = get_logger(__name__)

DEFAULT_FAILURE_THRESHOLD = 3
DEFAULT_SUCCESS_THRESHOLD = 2
DEFAULT_TIMEOUT_SECONDS = 15 * 60


class CircuitState(str, Enum):
    """Circuit breaker states."""

    CLOSED = "CLOSED"
    OPEN = "OPEN"
    HALF_OPEN = "HALF_OPEN"


@dataclass(frozen=True, slots=True)
class BreakerSnapshot:
    """Point-in-time view of the breaker, for health reporting."""

    name: str
    state: CircuitState
    failure_count: int
    success_count: int
    last_failure_at: float | None
    last_error: str | None


class CircuitBreaker:
    """Thread-safe circuit breaker with an injectable clock.

    All transitions happen under a single lock so concurrent
    record_success()/record_failure() calls from the event loop and the
    scheduler thread never interleave half-way through a transition.

    Attributes:
        name: Label used in log entries
        failure_threshold: Consecutive failures that open the circuit
        success_threshold: Successful trial calls needed in HALF_OPEN to close it
        timeout_seconds: Time the circuit stays OPEN after the last failure
    """

    def __init__(
        self,
        failure_threshold: int = DEFAULT_FAILURE_THRESHOLD,
        success_threshold: int = DEFAULT_SUCCESS_THRESHOLD,
        timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS,
        name: str = "ai_service",
        clock: Callable[[], float] = time.monotonic,
    ):
        if failure_threshold < 1 or success_threshold < 1:
            raise ValueError("failure_threshold and success_threshold must be >= 1")
        if timeout_seconds < 0:
            raise ValueError("timeout_seconds cannot be negative")

        self.name = name
        self.failure_threshold = failure_threshold
        self.success_threshold = success_threshold
        self.timeout_seconds = timeout_seconds
        self._clock = clock
        self._lock = threading.Lock()

        self._state = CircuitState.CLOSED
        self._failure_count = 0
        self._success_count = 0
        self._last_failure_at: float | None = None
        self._last_error: str | None = None
        self._trial_in_flight = False
        self._trial_started_at: float | None = None

    def can_make_request(self) -> bool:
        """Return True if a call to the guarded service may proceed now.

        In OPEN state this also performs the time-based OPEN -> HALF_OPEN
        transition. In HALF_OPEN only one trial call is admitted until its
        outcome is recorded, or until `timeout_seconds` pass without one.
        """
        with self._lock:
            if self._state == CircuitState.CLOSED:
                return True

            if self._state == CircuitState.OPEN:
                elapsed = self._clock() - (self._last_failure_at or 0.0)
                if elapsed < self.timeout_seconds:
                    return False
                self._transition(CircuitState.HALF_OPEN)
                self._success_count = 0
                self._start_trial()
                return True

            # HALF_OPEN
            if self._trial_in_flight:
                started = self._trial_started_at or 0.0
                if self._clock() - started < self.timeout_seconds:
                    return False
                logger.warning("circuit_trial_abandoned", breaker=self.name)
            self._start_trial()
            return True

    def _start_trial(self) -> None:
        """Caller must hold the lock."""
        self._trial_in_flight = True
        self._trial_started_at = self._clock()

    def record_success(self) -> None:
        """Record a successful call."""
        with self._lock:
            self._failure_count = 0
            self._trial_in_flight = False

            if self._state == CircuitState.HALF_OPEN:
                self._success_count += 1
                if self._success_count >= self.success_threshold:
                    self._transition(CircuitState.CLOSED)
                    self._success_count = 0
                    self._last_error = None

    def record_failure(self, error: BaseException | str | None = None) -> None:
        """Record a failed call.

        Args:
            error: The failure, kept (as text) for health reporting
        """
        with self._lock:
            self._failure_count += 1
            self._last_failure_at = self._clock()
            self._trial_in_flight = False
            if error is not None:
                self._last_error = str(error)[:500]

            if self._state == CircuitState.HALF_OPEN:
                self._success_count = 0
                self._transition(CircuitState.OPEN)
            elif (
                self._state == CircuitState.CLOSED
                and self._failure_count >= self.failure_threshold
            ):
                self._transition(CircuitState.OPEN)

    def get_state(self) -> CircuitState:
        """Current state, without triggering the OPEN -> HALF_OPEN check."""
        with self._lock:
            return self._state

    def reset(self) -> None:
        """Force the breaker back to CLOSED with all counters cleared."""
        with self._lock:
            self._state = CircuitState.CLOSED
            self._failure_count = 0
            self._success_count = 0
            self._last_failure_at = None
            self._last_error = None
            self._trial_in_flight = False
        logger.info("circuit_reset", breaker=self.name)

    def snapshot(self) -> BreakerSnapshot:
        """Return a consistent copy of the breaker's counters."""
        with self._lock:
            return BreakerSnapshot(
                name=self.name,
                state=self._state,
                failure_count=self._failure_count,
                success_count=self._success_count,
                last_failure_at=self._last_failure_at,
                last_error=self._last_error,
            )

    def _transition(self, new_state: CircuitState) -> None:
        """Change state and log it. Caller must hold the lock."""
        old_state = self._state
        self._state = new_state
        log = logger.warning if new_state == CircuitState.OPEN else logger.info
        log(
            "circuit_state_changed",
            breaker=self.name,
            from_state=old_state.value,
            to_state=new_state.value,
            failure_count=self._failure_count,
        )
