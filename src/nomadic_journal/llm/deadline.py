"""Caller deadlines with a shared cancellation token."""

from __future__ import annotations

import threading
import time
from concurrent.futures import Future
from concurrent.futures import TimeoutError as FutureTimeout
from typing import Any, Callable

from .types import ProviderTimeout

# Upper bound on a single blocking wait so cancellation is noticed promptly.
_POLL_SECONDS = 0.05


class Deadline:
    """Absolute monotonic deadline plus a cancellation event.

    ``Deadline(None)`` never expires on its own but can still be cancelled.
    Child deadlines created with :meth:`shrink` share the parent's event, so
    cancelling the caller cancels every wait below it.
    """

    def __init__(
        self,
        timeout_seconds: float | None = None,
        cancel_event: threading.Event | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._clock = clock
        self._expires_at = None if timeout_seconds is None else clock() + max(0.0, timeout_seconds)
        self._event = cancel_event or threading.Event()

    @classmethod
    def after(cls, seconds: float) -> "Deadline":
        return cls(seconds)

    @classmethod
    def never(cls) -> "Deadline":
        return cls(None)

    @property
    def cancel_event(self) -> threading.Event:
        return self._event

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def remaining(self) -> float | None:
        if self._expires_at is None:
            return None
        return max(0.0, self._expires_at - self._clock())

    def expired(self) -> bool:
        if self.cancelled:
            return True
        remaining = self.remaining()
        return remaining is not None and remaining <= 0.0

    def shrink(self, seconds: float | None) -> "Deadline":
        """Returns a child deadline that ends no later than this one."""
        remaining = self.remaining()
        if seconds is None:
            budget = remaining
        elif remaining is None:
            budget = seconds
        else:
            budget = min(seconds, remaining)
        return Deadline(budget, cancel_event=self._event, clock=self._clock)

    def check(self, provider: str | None = None) -> None:
        if self.cancelled:
            raise ProviderTimeout("call cancelled by caller", provider=provider)
        if self.expired():
            raise ProviderTimeout("deadline exceeded", provider=provider)

    def sleep(self, seconds: float) -> bool:
        """Sleeps up to ``seconds``; returns False if woken by expiry or cancellation."""
        if seconds <= 0:
            return not self.expired()
        remaining = self.remaining()
        if remaining is not None and remaining < seconds:
            self._event.wait(remaining)
            return False
        return not self._event.wait(seconds)

    def wait_future(self, future: "Future[Any]", provider: str | None = None) -> Any:
        """Blocks on ``future`` until it resolves or this deadline ends."""
        while True:
            self.check(provider)
            remaining = self.remaining()
            step = _POLL_SECONDS if remaining is None else min(_POLL_SECONDS, remaining)
            try:
                return future.result(timeout=step)
            except FutureTimeout:
                continue
