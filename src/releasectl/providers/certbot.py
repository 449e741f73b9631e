"""Certificate issuance through the ``certbot`` binary.

Issuance runs detached so the caller can poll for the outcome on a backoff
schedule (and resume polling from a later invocation). Each request leaves a
durable trail under ``<state_dir>/certbot``:

* ``<domain>.json``: request metadata (pid, command, start time).
* ``<domain>.log``: certbot output.
* ``<domain>.rc``: certbot's exit status, written once it finishes.
"""
from __future__ import annotations

import json
import os
import subprocess
from dataclasses import dataclass
from enum import Enum
from pathlib import Path

from ..models import now_iso


class CertbotError(RuntimeError):
    """Raised when an issuance request cannot be started or inspected."""


class IssueStatus(str, Enum):
    """Outcome of an issuance request as seen by the poller."""

    NOT_REQUESTED = "not_requested"
    PENDING = "pending"
    ISSUED = "issued"
    FAILED = "failed"


@dataclass(slots=True)
class CertbotProvider:
    """Request certificates via the webroot plugin and report their status."""

    state_dir: Path
    live_dir: Path = Path("/etc/letsencrypt/live")
    webroot: Path = Path("/var/www/letsencrypt")
    certbot_bin: str = "certbot"
    email: str | None = None

    def certificate_paths(self, domain: str) -> tuple[Path, Path]:
        """Return the ``(fullchain, privkey)`` paths certbot maintains for *domain*."""
        directory = self.live_dir / domain
        return directory / "fullchain.pem", directory / "privkey.pem"

    def has_certificate(self, domain: str) -> bool:
        """Return True when both certificate files exist for *domain*."""
        cert, key = self.certificate_paths(domain)
        return cert.exists() and key.exists()

    def command(self, domain: str) -> list[str]:
        """Return the certbot invocation for *domain*."""
        args = [
            self.certbot_bin,
            "certonly",
            "--webroot",
            "-w",
            str(self.webroot),
            "-d",
            domain,
            "--cert-name",
            domain,
            "--non-interactive",
            "--agree-tos",
            "--keep-until-expiring",
        ]
        if self.email:
            args.extend(["--email", self.email])
        else:
            args.append("--register-unsafely-without-email")
        return args

    def request(self, domain: str) -> int:
        """Start issuance for *domain* in the background and return its pid.

        A request that is still running is left alone and its pid returned.
        """
        if self.status(domain) is IssueStatus.PENDING:
            metadata = self._read_metadata(domain) or {}
            return int(str(metadata.get("pid", 0)))

        directory = self._directory()
        directory.mkdir(parents=True, exist_ok=True)
        self.webroot.mkdir(parents=True, exist_ok=True)
        rc_path = self._path(domain, "rc")
        rc_path.unlink(missing_ok=True)

        command = self.command(domain)
        pid = self._spawn(command, rc_path, self._path(domain, "log"))
        self._write_metadata(
            domain,
            {"domain": domain, "pid": pid, "command": command, "requested_at": now_iso()},
        )
        return pid

    def status(self, domain: str) -> IssueStatus:
        """Return the state of the most recent issuance request for *domain*."""
        metadata = self._read_metadata(domain)
        if metadata is None:
            return IssueStatus.NOT_REQUESTED
        rc_path = self._path(domain, "rc")
        if rc_path.exists():
            text = rc_path.read_text(encoding="utf-8").strip()
            if text == "0" and self.has_certificate(domain):
                return IssueStatus.ISSUED
            return IssueStatus.FAILED
        pid = metadata.get("pid")
        if isinstance(pid, int) and _pid_alive(pid):
            return IssueStatus.PENDING
        return IssueStatus.FAILED

    def failure_detail(self, domain: str, *, lines: int = 5) -> str:
        """Return the tail of certbot's output for *domain*."""
        log_path = self._path(domain, "log")
        try:
            content = log_path.read_text(encoding="utf-8", errors="replace")
        except FileNotFoundError:
            return "certbot exited without output"
        tail = [line for line in content.splitlines() if line.strip()][-lines:]
        return " | ".join(tail) or "certbot exited without output"

    # ------------------------------------------------------------------
    def _spawn(self, command: list[str], rc_path: Path, log_path: Path) -> int:
        # ``sh`` records certbot's exit status atomically once it finishes.
        script = '"$@"; printf "%s" $? > "$0.tmp" && mv "$0.tmp" "$0"'
        try:
            with log_path.open("ab") as log_handle:
                process = subprocess.Popen(  # noqa: S603, S607
                    ["sh", "-c", script, str(rc_path), *command],
                    stdin=subprocess.DEVNULL,
                    stdout=log_handle,
                    stderr=subprocess.STDOUT,
                    start_new_session=True,
                )
        except OSError as exc:
            raise CertbotError(f"Failed to start {self.certbot_bin}: {exc}") from exc
        return process.pid

    def _directory(self) -> Path:
        return self.state_dir / "certbot"

    def _path(self, domain: str, suffix: str) -> Path:
        return self._directory() / f"{domain}.{suffix}"

    def _read_metadata(self, domain: str) -> dict[str, object] | None:
        path = self._path(domain, "json")
        try:
            data = json.loads(path.read_text(encoding="utf-8"))
        except FileNotFoundError:
            return None
        except json.JSONDecodeError as exc:
            raise CertbotError(f"Corrupted issuance record {path}: {exc}") from exc
        return data if isinstance(data, dict) else None

    def _write_metadata(self, domain: str, payload: dict[str, object]) -> None:
        path = self._path(domain, "json")
        tmp_path = path.with_name(f".{path.name}.tmp")
        tmp_path.write_text(json.dumps(payload, indent=2) + "\n", encoding="utf-8")
        os.replace(tmp_path, path)


def _pid_alive(pid: int) -> bool:
    if pid <= 0:
        return False
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        return True
    return True


__all__ = ["CertbotError", "CertbotProvider", "IssueStatus"]
