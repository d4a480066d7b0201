"""Retry with backoff, per-provider circuit breaking, and degraded fallback."""

from __future__ import annotations

import logging
import random
import threading
import time
from collections import deque
from concurrent.futures import Executor
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Deque, Dict, Generic, Optional, TypeVar

from .deadline import Deadline
from .providers.base import CompletionProvider
from .types import CompletionRequest, CompletionResult, ProviderError, ProviderTimeout, ProviderUnavailable

logger = logging.getLogger(__name__)

T = TypeVar("T")


class CircuitState(str, Enum):
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


class CircuitOpenError(ProviderUnavailable):
    kind = "circuit_open"
    retryable = False
    counts_as_failure = False


@dataclass(frozen=True)
class RetryPolicy:
    max_attempts: int = 3
    base_delay_seconds: float = 0.5
    max_delay_seconds: float = 8.0
    backoff_multiplier: float = 2.0
    jitter_seconds: float = 0.25

    def delay_for(self, attempt: int, rng: random.Random) -> float:
        """Backoff before retry number ``attempt`` (1 = first retry)."""
        base = self.base_delay_seconds * (self.backoff_multiplier ** max(0, attempt - 1))
        delay = min(self.max_delay_seconds, base)
        if self.jitter_seconds > 0:
            delay += rng.uniform(0.0, self.jitter_seconds)
        return delay


@dataclass
class ProviderHealthState:
    provider: str
    state: CircuitState = CircuitState.CLOSED
    consecutive_failures: int = 0
    failure_times: Deque[float] = field(default_factory=deque)
    opened_at: float | None = None
    probe_in_flight: bool = False
    total_failures: int = 0
    total_successes: int = 0
    last_error: str | None = None

    def snapshot(self) -> Dict[str, Any]:
        return {
            "provider": self.provider,
            "state": self.state.value,
            "consecutive_failures": self.consecutive_failures,
            "total_failures": self.total_failures,
            "total_successes": self.total_successes,
            "last_error": self.last_error,
        }


class CircuitBreaker:
    """Tracks failures per provider name.

    ``failure_threshold`` consecutive failures inside ``window_seconds`` open
    the circuit. After ``cooldown_seconds`` a single probe is let through in
    the half-open state; its outcome closes or re-opens the circuit.
    """

    def __init__(
        self,
        failure_threshold: int = 5,
        window_seconds: float = 60.0,
        cooldown_seconds: float = 30.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.failure_threshold = max(1, int(failure_threshold))
        self.window_seconds = float(window_seconds)
        self.cooldown_seconds = float(cooldown_seconds)
        self._clock = clock
        self._states: Dict[str, ProviderHealthState] = {}
        self._lock = threading.Lock()

    def _state(self, provider: str) -> ProviderHealthState:
        state = self._states.get(provider)
        if state is None:
            state = ProviderHealthState(provider=provider)
            self._states[provider] = state
        return state

    def allow(self, provider: str) -> bool:
        with self._lock:
            state = self._state(provider)
            if state.state is CircuitState.CLOSED:
                return True
            if state.state is CircuitState.OPEN:
                if state.opened_at is not None and self._clock() - state.opened_at >= self.cooldown_seconds:
                    state.state = CircuitState.HALF_OPEN
                    state.probe_in_flight = True
                    logger.info("Circuit for %s half-open, probing", provider)
                    return True
                return False
            if state.probe_in_flight:
                return False
            state.probe_in_flight = True
            return True

    def record_success(self, provider: str) -> None:
        with self._lock:
            state = self._state(provider)
            if state.state is not CircuitState.CLOSED:
                logger.info("Circuit for %s closed", provider)
            state.state = CircuitState.CLOSED
            state.consecutive_failures = 0
            state.failure_times.clear()
            state.opened_at = None
            state.probe_in_flight = False
            state.total_successes += 1

    def record_failure(self, provider: str, error: BaseException) -> None:
        with self._lock:
            now = self._clock()
            state = self._state(provider)
            state.total_failures += 1
            state.last_error = f"{type(error).__name__}: {error}"[:240]
            state.probe_in_flight = False
            if state.state is CircuitState.HALF_OPEN:
                self._open(state, now)
                return
            state.failure_times.append(now)
            while state.failure_times and now - state.failure_times[0] > self.window_seconds:
                state.failure_times.popleft()
            state.consecutive_failures = len(state.failure_times)
            if state.state is CircuitState.CLOSED and state.consecutive_failures >= self.failure_threshold:
                self._open(state, now)

    def release(self, provider: str) -> None:
        """Frees a half-open probe slot whose call ended without a verdict."""
        with self._lock:
            self._state(provider).probe_in_flight = False

    def _open(self, state: ProviderHealthState, now: float) -> None:
        state.state = CircuitState.OPEN
        state.opened_at = now
        logger.warning(
            "Circuit for %s opened after %d failure(s); cooling down %.1fs",
            state.provider,
            state.consecutive_failures,
            self.cooldown_seconds,
        )

    def state_of(self, provider: str) -> CircuitState:
        with self._lock:
            return self._state(provider).state

    def snapshot(self) -> Dict[str, Dict[str, Any]]:
        with self._lock:
            return {name: state.snapshot() for name, state in sorted(self._states.items())}


class ResilientProvider:
    """Applies ``policy`` and ``breaker`` around one provider.

    When ``executor`` is given each attempt runs on a worker thread and the
    caller waits on the deadline, so expiry or cancellation abandons the
    attempt at once instead of waiting for the network call to return.
    """

    def __init__(
        self,
        provider: CompletionProvider,
        policy: RetryPolicy,
        breaker: CircuitBreaker,
        executor: Executor | None = None,
        rng: random.Random | None = None,
    ) -> None:
        self.provider = provider
        self.name = provider.name
        self.policy = policy
        self.breaker = breaker
        self.executor = executor
        self._rng = rng or random.Random()

    def _attempt(self, request: CompletionRequest, deadline: Deadline) -> CompletionResult:
        # Each attempt gets at most the request timeout, and never more than the caller has left.
        attempt_deadline = deadline.shrink(request.timeout_seconds)
        if self.executor is None:
            return self.provider.complete(request, attempt_deadline)
        future = self.executor.submit(self.provider.complete, request, attempt_deadline)
        return attempt_deadline.wait_future(future, provider=self.name)

    def _cached(self, request: CompletionRequest) -> CompletionResult | None:
        lookup = getattr(self.provider, "lookup", None)
        if lookup is None:
            return None
        return lookup(request)

    def complete(self, request: CompletionRequest, deadline: Deadline) -> CompletionResult:
        attempts = max(1, self.policy.max_attempts)
        for attempt in range(1, attempts + 1):
            deadline.check(self.name)
            # Cached answers are served even while the circuit is open.
            cached = self._cached(request)
            if cached is not None:
                return cached
            if not self.breaker.allow(self.name):
                raise CircuitOpenError(f"circuit open for {self.name}", provider=self.name)
            try:
                result = self._attempt(request, deadline)
            except ProviderError as exc:
                if exc.counts_as_failure and not exc.shared and not deadline.cancelled:
                    self.breaker.record_failure(self.name, exc)
                else:
                    self.breaker.release(self.name)
                if not exc.retryable:
                    raise
                if deadline.expired():
                    raise ProviderTimeout(f"deadline exceeded after {attempt} attempt(s)", provider=self.name) from exc
                if attempt == attempts:
                    raise
                delay = self.policy.delay_for(attempt, self._rng)
                logger.warning(
                    "%s attempt %d/%d failed (%s); retrying in %.2fs",
                    self.name,
                    attempt,
                    attempts,
                    exc.kind,
                    delay,
                )
                if not deadline.sleep(delay):
                    raise ProviderTimeout("deadline exceeded during backoff", provider=self.name) from exc
                continue
            except BaseException:
                self.breaker.release(self.name)
                raise
            if result.cached:
                # Served without a live call; health is unchanged.
                self.breaker.release(self.name)
            else:
                self.breaker.record_success(self.name)
            return result
        raise ProviderTimeout("no attempts made", provider=self.name)


@dataclass
class Outcome(Generic[T]):
    """Result of a provider call that may have degraded to a fallback."""

    status: str
    result: Optional[CompletionResult] = None
    value: Optional[T] = None
    error: Optional[ProviderError] = None

    @property
    def degraded(self) -> bool:
        return self.status == "degraded"


def run_with_fallback(
    call: Callable[[], CompletionResult],
    fallback: Callable[[Optional[ProviderError]], T] | None = None,
) -> Outcome[T]:
    try:
        return Outcome(status="native", result=call())
    except ProviderError as exc:
        if fallback is None:
            raise
        logger.info("Falling back to degraded output: %s", exc)
        return Outcome(status="degraded", value=fallback(exc), error=exc)
