"""
VoxNotes Backend — Retry Executor
===================================

What:  Runs one external call with bounded exponential-backoff retries,
       consulting the circuit breaker registry before every attempt.
Why:   Transient provider faults (timeouts, rate limits, 5xx) usually clear
       on their own; data problems (validation, auth) never do.
How:   A tenacity `AsyncRetrying` loop:
       - before each attempt: breaker check; a rejected attempt raises
         CircuitOpenError immediately and consumes no budget
       - on failure: classify, record on the breaker, retry only if retryable
       - delay(attempt) = min(max_delay, base_delay * 2^(attempt-1)) + jitter
       The sleep function and the random source are injected so attempt
       counts and delay schedules are testable without real timers.
Who:   TranscriptionStage, AnalysisStage and the audio fetch in NoteProcessor.

Every error that leaves `execute` is a VoxNotesError annotated with the
number of attempts actually made.
"""

import asyncio
import logging
import random
from dataclasses import dataclass
from typing import Awaitable, Callable, Generic, TypeVar

from tenacity import AsyncRetrying, RetryCallState, retry_if_exception, stop_after_attempt

from voxnotes.config import settings
from voxnotes.exceptions import CircuitOpenError, VoxNotesError
from voxnotes.services.circuit_breaker import CircuitBreakerRegistry
from voxnotes.services.error_classifier import as_voxnotes_error, classify_error

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass
class CallResult(Generic[T]):
    value: T
    attempts: int


class RetryExecutor:
    """Retry loop shared by every provider call."""

    def __init__(
        self,
        breakers: CircuitBreakerRegistry,
        max_attempts: int = 3,
        base_delay: float = 1.0,
        max_delay: float = 30.0,
        jitter: float = 1.0,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        random_source: Callable[[], float] = random.random,
    ):
        self.breakers = breakers
        self.max_attempts = max_attempts
        self.base_delay = base_delay
        self.max_delay = max_delay
        self.jitter = jitter
        self._sleep = sleep
        self._random = random_source

    @classmethod
    def from_settings(cls, breakers: CircuitBreakerRegistry, **overrides) -> "RetryExecutor":
        options = {
            "max_attempts": settings.retry_max_attempts,
            "base_delay": settings.retry_base_delay,
            "max_delay": settings.retry_max_delay,
            "jitter": settings.retry_jitter,
        }
        options.update(overrides)
        return cls(breakers, **options)

    def compute_delay(self, attempt: int) -> float:
        """Backoff before the retry that follows `attempt` (1-based)."""
        delay = min(self.max_delay, self.base_delay * 2 ** (attempt - 1))
        return delay + self.jitter * self._random()

    async def execute(self, service_key: str, fn: Callable[[], Awaitable[T]]) -> CallResult[T]:
        """
        Call `fn` until it succeeds, fails non-retryably, or the budget runs out.

        Raises:
            CircuitOpenError: the breaker for `service_key` rejected an attempt.
            VoxNotesError: the last (classified) error, with `.attempts` set.
        """
        attempts = 0

        def log_retry(retry_state: RetryCallState) -> None:
            exc = retry_state.outcome.exception() if retry_state.outcome else None
            logger.warning(
                "Retry %d/%d for %s after %.1fs: %s",
                retry_state.attempt_number,
                self.max_attempts,
                service_key,
                retry_state.next_action.sleep if retry_state.next_action else 0.0,
                exc,
            )

        retrying = AsyncRetrying(
            stop=stop_after_attempt(self.max_attempts),
            wait=lambda retry_state: self.compute_delay(retry_state.attempt_number),
            retry=retry_if_exception(self._should_retry),
            before_sleep=log_retry,
            sleep=self._sleep,
            reraise=True,
        )

        try:
            async for attempt in retrying:
                with attempt:
                    if not self.breakers.before_call(service_key):
                        raise CircuitOpenError(
                            service=service_key,
                            recovery_time=self.breakers.recovery_time(service_key),
                        )
                    attempts += 1
                    value = await self._attempt(service_key, fn)
        except VoxNotesError as exc:
            exc.with_attempts(attempts)
            logger.error(
                "%s call failed after %d attempt(s): %s [%s]",
                service_key,
                attempts,
                exc.message,
                exc.error_code,
            )
            raise

        return CallResult(value=value, attempts=attempts)

    async def _attempt(self, service_key: str, fn: Callable[[], Awaitable[T]]) -> T:
        try:
            value = await fn()
        except Exception as exc:
            classification = classify_error(exc)
            self.breakers.record_failure(service_key, classification.error_type.value)
            wrapped = as_voxnotes_error(exc, service_key)
            if wrapped is exc:
                raise
            raise wrapped from exc
        except BaseException:
            # Cancellation is not a provider verdict; free the half-open slot
            self.breakers.release_trial(service_key)
            raise
        self.breakers.record_success(service_key)
        return value

    @staticmethod
    def _should_retry(exc: BaseException) -> bool:
        if isinstance(exc, CircuitOpenError) or not isinstance(exc, Exception):
            return False
        return classify_error(exc).retryable
