"""Tests for bounded, cancellable polling."""
from __future__ import annotations

import threading
from collections.abc import Callable

import pytest

from releasectl.backoff import Backoff, BackoffExhausted
from releasectl.errors import CancelledError


class Clock:
    def __init__(self) -> None:
        self.now = 0.0
        self.sleeps: list[float] = []

    def __call__(self) -> float:
        return self.now

    def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += seconds


def _countdown(ready_after: int) -> tuple[list[int], Callable[[], str | None]]:
    calls: list[int] = []

    def probe() -> str | None:
        calls.append(len(calls))
        return "done" if len(calls) > ready_after else None

    return calls, probe


def test_returns_first_value() -> None:
    clock = Clock()
    calls, probe = _countdown(0)

    result = Backoff(initial=1.0, maximum=5.0, attempts=3, sleep=clock.sleep, clock=clock).poll(
        probe
    )

    assert result == "done"
    assert len(calls) == 1
    assert clock.sleeps == []


def test_delays_grow_and_cap() -> None:
    clock = Clock()
    _, probe = _countdown(5)

    Backoff(initial=1.0, maximum=5.0, attempts=10, sleep=clock.sleep, clock=clock).poll(
        probe
    )

    assert clock.sleeps == [1.0, 2.0, 4.0, 5.0, 5.0]


def test_attempts_bound() -> None:
    clock = Clock()
    calls, probe = _countdown(100)
    backoff = Backoff(initial=1.0, maximum=1.0, attempts=3, sleep=clock.sleep, clock=clock)

    with pytest.raises(BackoffExhausted) as excinfo:
        backoff.poll(probe)

    assert excinfo.value.attempts == 3
    assert len(calls) == 3
    assert clock.sleeps == [1.0, 1.0]


def test_deadline_bound_trims_last_wait() -> None:
    clock = Clock()
    _, probe = _countdown(100)
    backoff = Backoff(initial=4.0, maximum=4.0, deadline=10.0, sleep=clock.sleep, clock=clock)

    with pytest.raises(BackoffExhausted) as excinfo:
        backoff.poll(probe)

    assert clock.sleeps == [4.0, 4.0, 2.0]
    assert excinfo.value.elapsed == pytest.approx(10.0)


def test_cancel_before_first_probe() -> None:
    cancel = threading.Event()
    cancel.set()
    calls, probe = _countdown(0)

    with pytest.raises(CancelledError, match="issuance cancelled"):
        Backoff(initial=1.0, maximum=1.0, attempts=3, cancel=cancel).poll(
            probe, describe="issuance"
        )

    assert calls == []


def test_cancel_interrupts_wait() -> None:
    cancel = threading.Event()
    calls: list[int] = []

    def probe() -> None:
        calls.append(1)
        cancel.set()

    backoff = Backoff(initial=30.0, maximum=30.0, attempts=5, cancel=cancel)

    with pytest.raises(CancelledError):
        backoff.poll(probe)

    assert calls == [1]


def test_cancel_checked_after_injected_sleep() -> None:
    cancel = threading.Event()
    clock = Clock()

    def sleep(seconds: float) -> None:
        clock.sleep(seconds)
        cancel.set()

    backoff = Backoff(
        initial=1.0, maximum=1.0, attempts=5, cancel=cancel, sleep=sleep, clock=clock
    )

    with pytest.raises(CancelledError):
        backoff.poll(lambda: None)

    assert clock.sleeps == [1.0]
