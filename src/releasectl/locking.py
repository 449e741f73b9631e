"""Advisory file locks keyed by domain and scope.

Each ``(domain, scope)`` pair maps to one lock file under
``<runtime_dir>/locks``. Locks are taken with ``fcntl.flock`` so they are
released by the kernel when a process dies, and the file keeps a JSON record
of the last holder for diagnostics.

Locks are re-entrant for the thread that holds them: a release that holds the
``release`` scope and then needs the ``ledger`` scope (or a destructive reset
that needs a backup under the ``ledger`` scope it already holds) does not
deadlock against itself. A different thread or process is refused.
"""
from __future__ import annotations

import fcntl
import json
import os
import threading
import time
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path

from .errors import AlreadyInProgressError
from .models import now_iso

TLS_SCOPE = "tls"
RELEASE_SCOPE = "release"
LEDGER_SCOPE = "ledger"
RECORD_SCOPE = "record"

_POLL_INTERVAL = 0.05


class LockTimeoutError(AlreadyInProgressError):
    """Raised when a lock cannot be acquired within the allotted time."""

    def __init__(self, path: Path, holder: dict[str, object] | None) -> None:
        """Describe the contended lock and its current holder, if known."""
        detail = ""
        if holder:
            operation = holder.get("operation") or "unknown operation"
            detail = f" (held by pid {holder.get('pid')} for {operation})"
        super().__init__(f"Lock {path.name} is held by another operation{detail}.")
        self.path = path
        self.holder = holder


@dataclass(slots=True)
class LockHandle:
    """Information about an acquired lock."""

    path: Path
    wait_ms: int
    reentrant: bool = False


@dataclass(slots=True)
class _HeldLock:
    owner: int
    depth: int


class LockManager:
    """Hand out per-domain advisory locks."""

    def __init__(self, root: Path, default_timeout: float = 0.0) -> None:
        """Store the lock directory and the default acquisition timeout."""
        self.root = root.expanduser()
        self.default_timeout = max(0.0, default_timeout)
        self._guard = threading.Lock()
        self._held: dict[Path, _HeldLock] = {}
        self.wait_ms = 0

    # ------------------------------------------------------------------
    def lock_path(self, domain: str, scope: str) -> Path:
        """Return the lock file used for *domain* and *scope*."""
        safe = domain.strip().lower().replace("/", "-")
        if not safe:
            raise ValueError("Lock domain must be a non-empty string.")
        return self.root / "locks" / f"{safe}.{scope}.lock"

    def global_path(self) -> Path:
        """Return the lock file guarding cross-domain state (port reservations)."""
        return self.root / "locks" / "releasectl.lock"

    @contextmanager
    def domain_lock(
        self,
        domain: str,
        scope: str,
        *,
        timeout: float | None = None,
        operation: str | None = None,
    ) -> Iterator[LockHandle]:
        """Hold the ``(domain, scope)`` lock for the duration of the block."""
        path = self.lock_path(domain, scope)
        metadata = {"domain": domain, "scope": scope, "operation": operation}
        with self._acquire(path, self._timeout(timeout), metadata) as handle:
            yield handle

    @contextmanager
    def global_lock(
        self,
        *,
        timeout: float | None = None,
        operation: str | None = None,
    ) -> Iterator[LockHandle]:
        """Hold the global lock for the duration of the block."""
        path = self.global_path()
        metadata = {"domain": None, "scope": "global", "operation": operation}
        with self._acquire(path, self._timeout(timeout), metadata) as handle:
            yield handle

    def holder(self, domain: str, scope: str) -> dict[str, object] | None:
        """Return the metadata of the last holder of the lock, if recorded."""
        return _read_metadata(self.lock_path(domain, scope))

    def is_locked(self, domain: str, scope: str) -> bool:
        """Return True when another holder currently owns the lock."""
        path = self.lock_path(domain, scope)
        if not path.exists():
            return False
        fd = os.open(path, os.O_RDWR)
        try:
            try:
                fcntl.flock(fd, fcntl.LOCK_EX | fcntl.LOCK_NB)
            except BlockingIOError:
                return True
            fcntl.flock(fd, fcntl.LOCK_UN)
            return False
        finally:
            os.close(fd)

    # Internal helpers -------------------------------------------------
    def _timeout(self, timeout: float | None) -> float:
        return self.default_timeout if timeout is None else max(0.0, timeout)

    @contextmanager
    def _acquire(
        self,
        path: Path,
        timeout: float,
        metadata: dict[str, object | None],
    ) -> Iterator[LockHandle]:
        ident = threading.get_ident()
        with self._guard:
            held = self._held.get(path)
            if held is not None and held.owner == ident:
                held.depth += 1
            else:
                held = None

        if held is not None:
            try:
                yield LockHandle(path=path, wait_ms=0, reentrant=True)
            finally:
                with self._guard:
                    held.depth -= 1
            return

        path.parent.mkdir(parents=True, exist_ok=True)
        start = time.monotonic()
        fd = os.open(path, os.O_RDWR | os.O_CREAT, 0o640)
        try:
            while True:
                try:
                    fcntl.flock(fd, fcntl.LOCK_EX | fcntl.LOCK_NB)
                    break
                except BlockingIOError:
                    if time.monotonic() - start >= timeout:
                        raise LockTimeoutError(path, _read_metadata(path)) from None
                    time.sleep(_POLL_INTERVAL)
            wait_ms = int((time.monotonic() - start) * 1000)
            self.wait_ms += wait_ms
            try:
                _write_metadata(fd, path, metadata)
                with self._guard:
                    self._held[path] = _HeldLock(owner=ident, depth=1)
                yield LockHandle(path=path, wait_ms=wait_ms)
            finally:
                with self._guard:
                    self._held.pop(path, None)
                fcntl.flock(fd, fcntl.LOCK_UN)
        finally:
            os.close(fd)


def _write_metadata(fd: int, path: Path, metadata: dict[str, object | None]) -> None:
    payload = {
        "pid": os.getpid(),
        "thread": threading.get_ident(),
        "path": str(path),
        "acquired_at": now_iso(),
        **metadata,
    }
    data = json.dumps(payload, sort_keys=True).encode("utf-8")
    os.ftruncate(fd, 0)
    os.lseek(fd, 0, os.SEEK_SET)
    os.write(fd, data)


def _read_metadata(path: Path) -> dict[str, object] | None:
    try:
        text = path.read_text(encoding="utf-8")
    except OSError:
        return None
    if not text.strip():
        return None
    try:
        data = json.loads(text)
    except json.JSONDecodeError:
        return None
    return data if isinstance(data, dict) else None


__all__ = [
    "LEDGER_SCOPE",
    "LockHandle",
    "LockManager",
    "LockTimeoutError",
    "RECORD_SCOPE",
    "RELEASE_SCOPE",
    "TLS_SCOPE",
]
