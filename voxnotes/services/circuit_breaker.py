"""
VoxNotes Backend — Circuit Breakers
=====================================

What:  Per-service circuit breakers (transcription, analysis, storage) and the
       registry that owns them.
Why:   When a provider is failing systemically, every note would otherwise
       burn its whole retry budget against it. The breaker sheds that load
       and lets one trial call probe for recovery.
How:   Each breaker keeps the timestamps of recent failures in a sliding
       window, a histogram of error types, and a CLOSED/OPEN/HALF_OPEN state.
       The registry is created by the application lifespan and injected into
       the retry executor; it is not a module-level singleton, so tests and
       app instances never share breaker state.
Who:   RetryExecutor consults it before every attempt; /health reads snapshots.

State Machine:
    CLOSED
        → failures inside the trailing window reach `failure_threshold` → OPEN
    OPEN (every before_call returns False)
        → `cooldown_seconds` after opening, the next before_call returns True
          exactly once → HALF_OPEN
    HALF_OPEN (trial call in flight, everyone else still rejected)
        → trial succeeds → CLOSED, failure counter reset
        → trial fails → OPEN, cooldown restarts

Failure kind never changes the state machine; it is only counted in the
histogram for observability.
"""

import logging
import time
from collections import Counter, deque
from typing import Callable, Deque, Dict, Optional

from voxnotes.config import settings

logger = logging.getLogger(__name__)


class CircuitBreaker:
    """Failure-rate breaker for one service key."""

    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"

    def __init__(
        self,
        name: str,
        failure_threshold: int = 5,
        cooldown_seconds: float = 60.0,
        window_seconds: float = 300.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.name = name
        self.failure_threshold = failure_threshold
        self.cooldown_seconds = cooldown_seconds
        self.window_seconds = window_seconds
        self._clock = clock

        self.state = self.CLOSED
        self.opened_at: Optional[float] = None
        self.last_failure_time: Optional[float] = None
        self.error_types: Counter = Counter()
        self._failures: Deque[float] = deque()
        self._trial_in_flight = False

    # ── Queries ───────────────────────────────────────────────────────────

    @property
    def failure_count(self) -> int:
        """Failures inside the trailing window."""
        self._prune(self._clock())
        return len(self._failures)

    def seconds_until_reset(self) -> float:
        if self.state != self.OPEN or self.opened_at is None:
            return 0.0
        remaining = self.cooldown_seconds - (self._clock() - self.opened_at)
        return max(0.0, remaining)

    def health(self) -> str:
        if self.state != self.CLOSED:
            return self.state
        if self.failure_count > 0.7 * self.failure_threshold:
            return "degraded"
        return "healthy"

    def snapshot(self) -> Dict:
        return {
            "state": self.state,
            "health": self.health(),
            "failure_count": self.failure_count,
            "failure_threshold": self.failure_threshold,
            "error_types": dict(self.error_types),
            "seconds_until_reset": round(self.seconds_until_reset(), 1),
        }

    # ── Transitions ───────────────────────────────────────────────────────

    def before_call(self) -> bool:
        """True if a call may proceed now."""
        if self.state == self.CLOSED:
            return True

        if self.state == self.OPEN:
            elapsed = self._clock() - (self.opened_at or 0.0)
            if elapsed < self.cooldown_seconds:
                return False
            logger.info(
                "Circuit '%s' transitioning to HALF_OPEN after %.1fs",
                self.name,
                elapsed,
            )
            self.state = self.HALF_OPEN
            self._trial_in_flight = True
            return True

        # HALF_OPEN: only the single trial call is let through
        if self._trial_in_flight:
            return False
        self._trial_in_flight = True
        return True

    def record_success(self) -> None:
        if self.state == self.HALF_OPEN:
            logger.info("Circuit '%s' transitioning to CLOSED (service recovered)", self.name)
        self._failures.clear()
        self.state = self.CLOSED
        self.opened_at = None
        self._trial_in_flight = False

    def record_failure(self, error_type: str = "unknown") -> None:
        now = self._clock()
        self._failures.append(now)
        self.last_failure_time = now
        self.error_types[error_type] += 1

        if self.state == self.HALF_OPEN:
            logger.warning("Circuit '%s' returning to OPEN (trial call failed)", self.name)
            self._open(now)
        elif self.state == self.CLOSED and self.failure_count >= self.failure_threshold:
            logger.warning(
                "Circuit '%s' OPENING after %d failures in %.0fs",
                self.name,
                self.failure_count,
                self.window_seconds,
            )
            self._open(now)

    def release_trial(self) -> None:
        """Give back a half-open trial slot whose call ended without an outcome."""
        if self.state == self.HALF_OPEN and self._trial_in_flight:
            logger.info("Circuit '%s' trial call abandoned; next caller may retry", self.name)
            self._trial_in_flight = False

    def force_open(self) -> None:
        logger.warning("Circuit '%s' forced OPEN", self.name)
        self._open(self._clock())

    def force_close(self) -> None:
        logger.info("Circuit '%s' forced CLOSED", self.name)
        self.record_success()

    def _open(self, now: float) -> None:
        self.state = self.OPEN
        self.opened_at = now
        self._trial_in_flight = False

    def _prune(self, now: float) -> None:
        cutoff = now - self.window_seconds
        while self._failures and self._failures[0] < cutoff:
            self._failures.popleft()


class CircuitBreakerRegistry:
    """
    Breakers keyed by service name, created lazily on first failure.

    One registry lives for the lifetime of the orchestrator; every note
    shares it, which is what lets a failing provider throttle everyone.
    """

    def __init__(
        self,
        failure_threshold: int = 5,
        cooldown_seconds: float = 60.0,
        window_seconds: float = 300.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.failure_threshold = failure_threshold
        self.cooldown_seconds = cooldown_seconds
        self.window_seconds = window_seconds
        self._clock = clock
        self._breakers: Dict[str, CircuitBreaker] = {}

    @classmethod
    def from_settings(cls, clock: Callable[[], float] = time.monotonic) -> "CircuitBreakerRegistry":
        return cls(
            failure_threshold=settings.cb_failure_threshold,
            cooldown_seconds=settings.cb_cooldown_seconds,
            window_seconds=settings.cb_window_seconds,
            clock=clock,
        )

    def get(self, service_key: str) -> CircuitBreaker:
        breaker = self._breakers.get(service_key)
        if breaker is None:
            breaker = CircuitBreaker(
                name=service_key,
                failure_threshold=self.failure_threshold,
                cooldown_seconds=self.cooldown_seconds,
                window_seconds=self.window_seconds,
                clock=self._clock,
            )
            self._breakers[service_key] = breaker
        return breaker

    def before_call(self, service_key: str) -> bool:
        breaker = self._breakers.get(service_key)
        return breaker.before_call() if breaker else True

    def record_success(self, service_key: str) -> None:
        breaker = self._breakers.get(service_key)
        if breaker:
            breaker.record_success()

    def record_failure(self, service_key: str, error_type: str = "unknown") -> None:
        self.get(service_key).record_failure(error_type)

    def release_trial(self, service_key: str) -> None:
        breaker = self._breakers.get(service_key)
        if breaker:
            breaker.release_trial()

    def recovery_time(self, service_key: str) -> int:
        breaker = self._breakers.get(service_key)
        if breaker is None:
            return 0
        return int(round(breaker.seconds_until_reset()))

    def snapshot(self) -> Dict[str, Dict]:
        return {key: breaker.snapshot() for key, breaker in sorted(self._breakers.items())}

    def force_open(self, service_key: str) -> None:
        self.get(service_key).force_open()

    def force_close(self, service_key: str) -> None:
        self.get(service_key).force_close()

    def reset(self) -> None:
        self._breakers.clear()
