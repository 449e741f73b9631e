"""Tests for the locking primitives."""
from __future__ import annotations

import json
import os
import threading
from pathlib import Path

import pytest

from releasectl.errors import AlreadyInProgressError
from releasectl.locking import LEDGER_SCOPE, RELEASE_SCOPE, TLS_SCOPE, LockManager, LockTimeoutError


def test_domain_lock_creates_metadata(tmp_path: Path) -> None:
    """Acquiring a lock writes metadata and releases cleanly."""
    manager = LockManager(tmp_path / "run", default_timeout=1.0)

    lock_path = tmp_path / "run" / "locks" / "alpha.example.com.tls.lock"
    with manager.domain_lock("alpha.example.com", TLS_SCOPE, operation="tls.begin") as handle:
        assert handle.wait_ms >= 0
        assert lock_path.exists()
        data = json.loads(lock_path.read_text(encoding="utf-8"))
        assert data["pid"] == os.getpid()
        assert data["path"] == str(lock_path)
        assert data["operation"] == "tls.begin"

    # Lockfile persists for diagnostics but no longer holds the lock.
    assert not manager.is_locked("alpha.example.com", TLS_SCOPE)
    with manager.domain_lock("alpha.example.com", TLS_SCOPE, timeout=0.2):
        pass


def test_second_holder_fails_fast(tmp_path: Path) -> None:
    """Another holder of the same scope is refused instead of queueing."""
    first = LockManager(tmp_path / "run")
    second = LockManager(tmp_path / "run")

    with first.domain_lock("alpha.example.com", RELEASE_SCOPE, operation="release"):
        assert second.is_locked("alpha.example.com", RELEASE_SCOPE)
        with pytest.raises(AlreadyInProgressError, match="release"):
            with second.domain_lock("alpha.example.com", RELEASE_SCOPE):
                pass


def test_timeout_error_is_already_in_progress(tmp_path: Path) -> None:
    """Waiting out the timeout raises LockTimeoutError, a busy error."""
    first = LockManager(tmp_path / "run")
    second = LockManager(tmp_path / "run", default_timeout=0.1)

    with first.domain_lock("alpha.example.com", LEDGER_SCOPE):
        with pytest.raises(LockTimeoutError) as excinfo:
            with second.domain_lock("alpha.example.com", LEDGER_SCOPE):
                pass
    assert isinstance(excinfo.value, AlreadyInProgressError)
    assert excinfo.value.retryable


def test_scopes_and_domains_are_independent(tmp_path: Path) -> None:
    """Different scopes or domains never contend with each other."""
    first = LockManager(tmp_path / "run")
    second = LockManager(tmp_path / "run")

    with first.domain_lock("alpha.example.com", TLS_SCOPE):
        with second.domain_lock("alpha.example.com", RELEASE_SCOPE):
            pass
        with second.domain_lock("beta.example.com", TLS_SCOPE):
            pass


def test_lock_is_reentrant_for_the_holding_thread(tmp_path: Path) -> None:
    """Nested acquisition by the same thread succeeds."""
    manager = LockManager(tmp_path / "run")

    with manager.domain_lock("alpha.example.com", LEDGER_SCOPE) as outer:
        with manager.domain_lock("alpha.example.com", LEDGER_SCOPE) as inner:
            assert inner.reentrant
        assert not outer.reentrant
        assert manager.is_locked("alpha.example.com", LEDGER_SCOPE)
    assert not manager.is_locked("alpha.example.com", LEDGER_SCOPE)


def test_lock_is_not_shared_with_other_threads(tmp_path: Path) -> None:
    """A second thread of the same process is refused."""
    manager = LockManager(tmp_path / "run")
    errors: list[BaseException] = []

    def contend() -> None:
        try:
            with manager.domain_lock("alpha.example.com", TLS_SCOPE):
                pass
        except AlreadyInProgressError as exc:
            errors.append(exc)

    with manager.domain_lock("alpha.example.com", TLS_SCOPE):
        worker = threading.Thread(target=contend)
        worker.start()
        worker.join(timeout=5)

    assert len(errors) == 1


def test_global_lock_path(tmp_path: Path) -> None:
    """The global lock lives next to the domain locks."""
    manager = LockManager(tmp_path / "run")

    with manager.global_lock(operation="declare"):
        assert (tmp_path / "run" / "locks" / "releasectl.lock").exists()


def test_blank_domain_rejected(tmp_path: Path) -> None:
    """Locks need a domain to key on."""
    manager = LockManager(tmp_path / "run")

    with pytest.raises(ValueError):
        manager.lock_path("  ", TLS_SCOPE)


def test_wait_time_accumulates_on_the_manager(tmp_path: Path) -> None:
    """Time spent waiting for a busy lock is added to ``wait_ms``."""
    first = LockManager(tmp_path / "run")
    second = LockManager(tmp_path / "run", default_timeout=5.0)
    held = threading.Event()
    done = threading.Event()

    def holder() -> None:
        with first.domain_lock("alpha.example.com", RELEASE_SCOPE):
            held.set()
            done.wait(0.3)

    thread = threading.Thread(target=holder)
    thread.start()
    held.wait(5)
    with second.domain_lock("alpha.example.com", RELEASE_SCOPE) as handle:
        waited = handle.wait_ms
    thread.join()

    assert waited >= 100
    assert second.wait_ms == waited
    assert first.wait_ms == 0
