"""Structured operation logging.

Every CLI command runs inside :meth:`StructuredLogger.operation`, which appends
one JSON object per operation to ``<logs_dir>/operations.jsonl``. Library
modules log human-readable progress through the standard :mod:`logging`
package under the ``releasectl`` logger; the structured logger attaches a
file handler for it writing ``<logs_dir>/releasectl.log``.

Logging must never break a command: when the directory cannot be created or a
write fails, the logger disables itself and carries on.
"""
from __future__ import annotations

import getpass
import json
import logging
import os
import secrets
import time
from collections.abc import Iterator, Mapping, Sequence
from contextlib import contextmanager
from pathlib import Path

from .models import now_iso

LOGGER_NAME = "releasectl"
_HANDLER_MARKER = "_releasectl_structured"


def _sanitize(value: object) -> object:
    """Return a JSON-safe representation of *value*."""
    if value is None or isinstance(value, (str, int, float, bool)):
        return value
    if isinstance(value, Path):
        return str(value)
    if isinstance(value, Mapping):
        return {str(key): _sanitize(item) for key, item in value.items()}
    if isinstance(value, (list, tuple)):
        return [_sanitize(item) for item in value]
    return str(value)


def _resolve_actor() -> dict[str, object]:
    try:
        user = getpass.getuser()
    except (KeyError, OSError):  # pragma: no cover - depends on passwd database
        user = str(os.getuid())
    return {"user": user, "uid": os.getuid(), "pid": os.getpid()}


class OperationScope:
    """Collects the outcome of a single command execution."""

    def __init__(
        self,
        command: str,
        *,
        args: Mapping[str, object] | None,
        target: Mapping[str, object] | None,
    ) -> None:
        """Initialise the scope for *command*."""
        self.command = command
        self.operation_id = f"op-{secrets.token_hex(6)}"
        self.args = dict(args or {})
        self.target = dict(target or {})
        self.actor: Mapping[str, object] = _resolve_actor()
        self.started_at = now_iso()
        self.lock_wait_ms: int | None = None
        self.steps: list[dict[str, object]] = []
        self.result: dict[str, object] | None = None
        self._start = time.perf_counter()

    def set_lock_wait_ms(self, value: int) -> None:
        """Record how long the command waited for its locks."""
        self.lock_wait_ms = value

    def add_step(self, name: str, *, status: str = "success", detail: object = None) -> None:
        """Append a named step to the operation trail."""
        step: dict[str, object] = {"name": name, "status": status, "at": now_iso()}
        if detail is not None:
            step["detail"] = _sanitize(detail)
        self.steps.append(step)

    def success(
        self,
        message: str,
        *,
        changed: int = 0,
        backups: Sequence[str] | None = None,
        context: Mapping[str, object] | None = None,
    ) -> None:
        """Mark the operation as successful."""
        self._finish("success", message, changed=changed, backups=backups, context=context)

    def warning(
        self,
        message: str,
        *,
        warnings: Sequence[str] | None = None,
        errors: Sequence[str] | None = None,
        changed: int = 0,
        backups: Sequence[str] | None = None,
        context: Mapping[str, object] | None = None,
    ) -> None:
        """Mark the operation as completed with warnings."""
        self._finish(
            "warning",
            message,
            changed=changed,
            backups=backups,
            context=context,
            warnings=list(warnings or [message]),
            errors=list(errors or []),
        )

    def error(
        self,
        message: str,
        *,
        errors: Sequence[str] | None = None,
        rc: int = 1,
        context: Mapping[str, object] | None = None,
    ) -> None:
        """Mark the operation as failed."""
        self._finish(
            "error",
            message,
            changed=0,
            backups=None,
            context=context,
            errors=list(errors or [message]),
            rc=rc,
        )

    def to_record(self) -> dict[str, object]:
        """Return the JSON record written to the operations log."""
        result = self.result or {
            "status": "unknown",
            "message": "Operation ended without recording a result.",
        }
        return {
            "op_id": self.operation_id,
            "command": self.command,
            "args": _sanitize(self.args),
            "target": _sanitize(self.target),
            "actor": _sanitize(self.actor),
            "started_at": self.started_at,
            "finished_at": now_iso(),
            "duration_ms": int((time.perf_counter() - self._start) * 1000),
            "lock_wait_ms": self.lock_wait_ms,
            "steps": self.steps,
            "result": result,
        }

    # ------------------------------------------------------------------
    def _finish(
        self,
        status: str,
        message: str,
        *,
        changed: int,
        backups: Sequence[str] | None,
        context: Mapping[str, object] | None,
        warnings: list[str] | None = None,
        errors: list[str] | None = None,
        rc: int | None = None,
    ) -> None:
        result: dict[str, object] = {
            "status": status,
            "message": message,
            "changed": changed,
            "warnings": warnings or [],
            "errors": errors or [],
            "backups": list(backups or []),
            "context": _sanitize(dict(context or {})),
        }
        if rc is not None:
            result["rc"] = rc
        self.result = result


class StructuredLogger:
    """Write operation records and library log messages under *log_dir*."""

    def __init__(self, log_dir: Path, *, level: int = logging.INFO) -> None:
        """Prepare the log directory, disabling logging when it is unusable."""
        self._log_dir = log_dir.expanduser()
        self._operations_log_path = self._log_dir / "operations.jsonl"
        self._text_log_path = self._log_dir / "releasectl.log"
        self._enabled = True
        try:
            self._log_dir.mkdir(parents=True, exist_ok=True)
        except OSError:
            self._enabled = False
            return
        self._attach_handler(level)

    @property
    def enabled(self) -> bool:
        """Return True while the logger is still writing records."""
        return self._enabled

    @contextmanager
    def operation(
        self,
        command: str,
        *,
        args: Mapping[str, object] | None = None,
        target: Mapping[str, object] | None = None,
    ) -> Iterator[OperationScope]:
        """Track a command; the record is written when the block exits."""
        scope = OperationScope(command, args=args, target=target)
        library_logger = logging.getLogger(LOGGER_NAME)
        library_logger.info("%s %s started", scope.operation_id, command)
        try:
            yield scope
        except BaseException as exc:
            if scope.result is None:
                scope.error(f"Unhandled exception: {exc}", errors=[repr(exc)])
            raise
        finally:
            status = scope.result.get("status") if scope.result else "unknown"
            library_logger.info("%s %s finished: %s", scope.operation_id, command, status)
            self._write(scope.to_record())

    # ------------------------------------------------------------------
    def _write(self, record: Mapping[str, object]) -> None:
        if not self._enabled:
            return
        try:
            with self._operations_log_path.open("a", encoding="utf-8") as handle:
                handle.write(json.dumps(record, sort_keys=False) + "\n")
        except OSError:
            self._enabled = False

    def _attach_handler(self, level: int) -> None:
        library_logger = logging.getLogger(LOGGER_NAME)
        library_logger.setLevel(level)
        for existing in list(library_logger.handlers):
            marker = getattr(existing, _HANDLER_MARKER, None)
            if marker == str(self._text_log_path):
                return
            if marker is not None:
                library_logger.removeHandler(existing)
                existing.close()
        try:
            handler = logging.FileHandler(self._text_log_path, encoding="utf-8", delay=True)
        except OSError:  # pragma: no cover - delay=True defers opening
            return
        handler.setFormatter(
            logging.Formatter("%(asctime)s %(levelname)s %(name)s: %(message)s")
        )
        setattr(handler, _HANDLER_MARKER, str(self._text_log_path))
        library_logger.addHandler(handler)


__all__ = ["LOGGER_NAME", "OperationScope", "StructuredLogger"]
