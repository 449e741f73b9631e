"""Bounded, cancellable polling with capped exponential backoff."""
from __future__ import annotations

import threading
import time
from collections.abc import Callable
from dataclasses import dataclass
from typing import TypeVar

from .errors import CancelledError

T = TypeVar("T")


class BackoffExhausted(RuntimeError):
    """Raised when a poll runs out of attempts or time."""

    def __init__(self, attempts: int, elapsed: float) -> None:
        """Record how many probes ran and how long the poll took."""
        super().__init__(f"Gave up after {attempts} attempt(s) in {elapsed:.1f}s.")
        self.attempts = attempts
        self.elapsed = elapsed


@dataclass(slots=True)
class Backoff:
    """Poll a probe until it yields a value, a bound is hit or the caller cancels.

    ``deadline`` bounds the total wall time (seconds) and ``attempts`` bounds the
    number of probes; at least one of them should be set. Waiting happens on
    the ``cancel`` event when one is supplied so that setting it interrupts the
    current wait immediately.
    """

    initial: float
    maximum: float
    deadline: float | None = None
    attempts: int | None = None
    factor: float = 2.0
    cancel: threading.Event | None = None
    sleep: Callable[[float], None] | None = None
    clock: Callable[[], float] = time.monotonic

    def poll(self, probe: Callable[[], T | None], *, describe: str = "poll") -> T:
        """Call *probe* until it returns something other than ``None``."""
        start = self.clock()
        delay = max(0.0, self.initial)
        attempt = 0
        while True:
            self._check_cancelled(describe)
            attempt += 1
            result = probe()
            if result is not None:
                return result
            elapsed = self.clock() - start
            if self.attempts is not None and attempt >= self.attempts:
                raise BackoffExhausted(attempt, elapsed)
            wait = delay
            if self.deadline is not None:
                remaining = self.deadline - elapsed
                if remaining <= 0:
                    raise BackoffExhausted(attempt, elapsed)
                wait = min(wait, remaining)
            self._wait(wait, describe)
            delay = min(delay * self.factor, self.maximum)

    # ------------------------------------------------------------------
    def _check_cancelled(self, describe: str) -> None:
        if self.cancel is not None and self.cancel.is_set():
            raise CancelledError(f"{describe} cancelled.")

    def _wait(self, seconds: float, describe: str) -> None:
        if self.sleep is not None:
            self.sleep(seconds)
        elif self.cancel is not None:
            if self.cancel.wait(seconds):
                raise CancelledError(f"{describe} cancelled.")
        else:
            time.sleep(seconds)
        self._check_cancelled(describe)


__all__ = ["Backoff", "BackoffExhausted"]
