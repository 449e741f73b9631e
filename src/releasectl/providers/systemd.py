"""Systemd provider for backend process units and the backup timer."""
from __future__ import annotations

import subprocess
from collections.abc import Mapping, Sequence
from dataclasses import dataclass
from pathlib import Path

from ..templates import TemplateEngine

BACKUP_UNIT = "releasectl-backup"


class SystemdError(RuntimeError):
    """Raised when systemd operations fail."""


@dataclass(slots=True)
class SystemdProvider:
    """Render and drive systemd units for process sites."""

    templates: TemplateEngine
    systemd_dir: Path = Path("/etc/systemd/system")
    systemctl_bin: str = "systemctl"

    def unit_name(self, service: str) -> str:
        """Return the systemd unit name for *service*."""
        safe = service.replace("/", "-")
        return f"releasectl-{safe}.service"

    def unit_path(self, service: str) -> Path:
        """Return the full path for the service unit file."""
        return self.systemd_dir / self.unit_name(service)

    def render_unit(self, service: str, context: Mapping[str, object]) -> bool:
        """Render the unit file for *service*; reload the daemon on change."""
        changed = self.templates.render_to_path(
            "systemd/service.j2",
            self.unit_path(service),
            context,
            mode=0o644,
        )
        if changed:
            self.daemon_reload()
        return changed

    def render_backup_timer(
        self,
        service_context: Mapping[str, object],
        timer_context: Mapping[str, object],
    ) -> bool:
        """Render the oneshot backup service and its timer."""
        service_changed = self.templates.render_to_path(
            "systemd/backup.service.j2",
            self.systemd_dir / f"{BACKUP_UNIT}.service",
            service_context,
            mode=0o644,
        )
        timer_changed = self.templates.render_to_path(
            "systemd/backup.timer.j2",
            self.systemd_dir / f"{BACKUP_UNIT}.timer",
            {**dict(timer_context), "service_unit": f"{BACKUP_UNIT}.service"},
            mode=0o644,
        )
        changed = service_changed or timer_changed
        if changed:
            self.daemon_reload()
        return changed

    def enable_backup_timer(self) -> subprocess.CompletedProcess[str]:
        """Enable and start the backup timer."""
        return self._systemctl("enable", "--now", f"{BACKUP_UNIT}.timer")

    def enable(self, service: str) -> subprocess.CompletedProcess[str]:
        """Enable the unit so it starts at boot."""
        return self._systemctl("enable", self.unit_name(service))

    def stop(self, service: str) -> subprocess.CompletedProcess[str]:
        """Stop the unit."""
        return self._systemctl("stop", self.unit_name(service))

    def restart(self, service: str) -> subprocess.CompletedProcess[str]:
        """Stop the unit if it runs and start it again from its current unit file."""
        return self._systemctl("restart", self.unit_name(service))

    def is_active(self, service: str) -> bool:
        """Return True when systemd reports the unit as active."""
        result = self._systemctl("is-active", self.unit_name(service), check=False)
        return result.returncode == 0 and (result.stdout or "").strip() == "active"

    def remove(self, service: str) -> None:
        """Remove the unit file for *service*."""
        path = self.unit_path(service)
        try:
            path.unlink()
        except FileNotFoundError:
            return
        self.daemon_reload()

    def daemon_reload(self) -> None:
        """Ask systemd to re-read unit files."""
        self._systemctl("daemon-reload")

    # ------------------------------------------------------------------
    def _systemctl(self, *args: str, check: bool = True) -> subprocess.CompletedProcess[str]:
        command = [self.systemctl_bin, *args]
        return self._run_command(command, check=check, error_prefix=" ".join(command[:2]))

    def _run_command(
        self,
        args: Sequence[str],
        *,
        check: bool,
        error_prefix: str,
    ) -> subprocess.CompletedProcess[str]:
        try:
            result = subprocess.run(  # noqa: S603, S607
                list(args),
                capture_output=True,
                text=True,
                check=False,
            )
        except FileNotFoundError as exc:
            raise SystemdError(f"{args[0]} not found: {exc}") from exc
        if check and result.returncode != 0:
            stdout = getattr(result, "stdout", "") or ""
            stderr = getattr(result, "stderr", "") or ""
            message = stderr.strip() or stdout.strip() or "no output"
            raise SystemdError(f"{error_prefix} failed (exit {result.returncode}): {message}")
        return result


__all__ = ["BACKUP_UNIT", "SystemdError", "SystemdProvider"]
