"""Nginx provider for installing and reloading site configurations."""
from __future__ import annotations

import logging
import subprocess
from collections.abc import Sequence
from dataclasses import dataclass
from pathlib import Path

from ..templates import write_if_changed

logger = logging.getLogger("releasectl.nginx")


class NginxError(RuntimeError):
    """Raised when nginx operations fail."""


@dataclass(slots=True)
class NginxInstallResult:
    """Outcome of installing an nginx site configuration."""

    changed: bool
    validation: subprocess.CompletedProcess[str] | None = None
    reload: subprocess.CompletedProcess[str] | None = None
    validation_error: str | None = None


@dataclass(slots=True)
class NginxProvider:
    """Install rendered vhost configurations and keep nginx in a working state."""

    sites_available: Path = Path("/etc/nginx/sites-available")
    sites_enabled: Path = Path("/etc/nginx/sites-enabled")
    nginx_bin: str = "nginx"

    def site_name(self, domain: str) -> str:
        """Return the canonical configuration file name for *domain*."""
        safe = domain.replace("/", "-")
        return f"releasectl-{safe}.conf"

    def site_path(self, domain: str) -> Path:
        """Return the path to the nginx site configuration file."""
        return self.sites_available / self.site_name(domain)

    def enabled_path(self, domain: str) -> Path:
        """Return the path of the symlink in sites-enabled for *domain*."""
        return self.sites_enabled / self.site_name(domain)

    def install_site(
        self,
        domain: str,
        content: str,
        *,
        reload_on_change: bool = True,
    ) -> NginxInstallResult:
        """Write *content* as the site configuration for *domain*.

        Unchanged content is a no-op. A change is validated with ``nginx -t``
        before nginx reloads; a validation failure restores the previous file
        (or removes a brand-new one) so nginx never loads a broken config.
        """
        destination = self.site_path(domain)
        destination.parent.mkdir(parents=True, exist_ok=True)

        previous: tuple[str, int] | None = None
        if destination.exists():
            previous = (
                destination.read_text(encoding="utf-8"),
                destination.stat().st_mode,
            )

        if not write_if_changed(destination, content, mode=0o640):
            return NginxInstallResult(changed=False)

        try:
            validation_result = self.test_config()
        except NginxError as exc:
            logger.warning("nginx rejected configuration for %s: %s", domain, exc)
            if previous is None:
                destination.unlink(missing_ok=True)
            else:
                old_content, mode = previous
                destination.write_text(old_content, encoding="utf-8")
                destination.chmod(mode)
            return NginxInstallResult(changed=False, validation_error=str(exc))

        reload_result: subprocess.CompletedProcess[str] | None = None
        if reload_on_change:
            reload_result = self.reload()
        return NginxInstallResult(
            changed=True,
            validation=validation_result,
            reload=reload_result,
        )

    def enable(self, domain: str) -> bool:
        """Enable the site by creating a symlink in sites-enabled.

        Returns True when a new symlink was created.
        """
        source = self.site_path(domain)
        target = self.enabled_path(domain)
        target.parent.mkdir(parents=True, exist_ok=True)
        if target.exists() or target.is_symlink():
            try:
                if target.resolve() == source.resolve():
                    return False
            except FileNotFoundError:
                pass
            target.unlink()
        target.symlink_to(source)
        return True

    def disable(self, domain: str) -> None:
        """Disable the site by removing the symlink."""
        self.enabled_path(domain).unlink(missing_ok=True)

    def remove(self, domain: str) -> None:
        """Remove both the configuration and symlink for *domain*."""
        self.disable(domain)
        self.site_path(domain).unlink(missing_ok=True)

    def is_enabled(self, domain: str) -> bool:
        """Return True when the site is enabled via the sites-enabled symlink."""
        target = self.enabled_path(domain)
        if not target.is_symlink():
            return False
        try:
            return target.resolve() == self.site_path(domain).resolve()
        except FileNotFoundError:
            return False

    def test_config(self) -> subprocess.CompletedProcess[str]:
        """Run ``nginx -t`` to validate the configuration."""
        return self._run_nginx(["-t"])

    def reload(self) -> subprocess.CompletedProcess[str]:
        """Reload nginx to apply configuration changes."""
        return self._run_nginx(["-s", "reload"])

    # ------------------------------------------------------------------
    def _run_nginx(self, args: Sequence[str]) -> subprocess.CompletedProcess[str]:
        command = [self.nginx_bin, *args]
        try:
            result = subprocess.run(  # noqa: S603, S607
                command,
                capture_output=True,
                text=True,
                check=False,
            )
        except FileNotFoundError as exc:
            raise NginxError(f"{self.nginx_bin} not found: {exc}") from exc
        if result.returncode != 0:
            message = (result.stderr or result.stdout or "no output").strip()
            raise NginxError(
                f"{self.nginx_bin} {' '.join(args)} failed (exit {result.returncode}): {message}"
            )
        return result


__all__ = ["NginxError", "NginxInstallResult", "NginxProvider"]
