"""Tests for the nginx provider."""
from __future__ import annotations

import stat
import subprocess
from collections.abc import Sequence
from pathlib import Path
from typing import Any

import pytest

from releasectl.providers import nginx as nginx_module
from releasectl.providers.nginx import NginxError, NginxProvider

CONFIG = "server {\n    server_name example.test;\n}\n"


class DummyResult:
    """Stand-in for ``subprocess.CompletedProcess``."""

    def __init__(self, returncode: int = 0, stdout: str = "", stderr: str = "") -> None:
        """Initialise the dummy result."""
        self.returncode = returncode
        self.stdout = stdout
        self.stderr = stderr


@pytest.fixture
def provider(tmp_path: Path) -> NginxProvider:
    """Return an nginx provider bound to temporary directories."""
    return NginxProvider(
        sites_available=tmp_path / "sites-available",
        sites_enabled=tmp_path / "sites-enabled",
        nginx_bin="nginx",
    )


@pytest.fixture
def calls(monkeypatch: pytest.MonkeyPatch) -> list[tuple[str, ...]]:
    """Record nginx invocations instead of running them."""
    recorded: list[tuple[str, ...]] = []

    def fake_run(self: NginxProvider, args: Sequence[str]) -> DummyResult:
        recorded.append(tuple(args))
        return DummyResult()

    monkeypatch.setattr(NginxProvider, "_run_nginx", fake_run)
    return recorded


def test_site_paths_are_namespaced(provider: NginxProvider) -> None:
    assert provider.site_name("www.example.com") == "releasectl-www.example.com.conf"
    assert provider.site_path("a.test").parent == provider.sites_available
    assert provider.enabled_path("a.test").parent == provider.sites_enabled


def test_install_site_writes_validates_and_reloads(
    provider: NginxProvider,
    calls: list[tuple[str, ...]],
) -> None:
    """A new configuration is written, checked with ``nginx -t`` and reloaded."""
    result = provider.install_site("alpha.test", CONFIG)

    assert result.changed is True
    assert result.validation is not None
    assert result.reload is not None
    path = provider.site_path("alpha.test")
    assert path.read_text(encoding="utf-8") == CONFIG
    assert stat.S_IMODE(path.stat().st_mode) == 0o640
    assert calls == [("-t",), ("-s", "reload")]


def test_install_site_unchanged_is_a_noop(
    provider: NginxProvider,
    calls: list[tuple[str, ...]],
) -> None:
    """Re-installing identical content neither validates nor reloads."""
    provider.install_site("alpha.test", CONFIG)
    calls.clear()

    result = provider.install_site("alpha.test", CONFIG)

    assert result.changed is False
    assert calls == []


def test_install_site_without_reload(
    provider: NginxProvider,
    calls: list[tuple[str, ...]],
) -> None:
    provider.install_site("alpha.test", CONFIG, reload_on_change=False)

    assert calls == [("-t",)]


def test_rejected_new_site_is_removed(
    monkeypatch: pytest.MonkeyPatch,
    provider: NginxProvider,
) -> None:
    """A brand-new configuration that fails validation never stays on disk."""

    def fake_run(self: NginxProvider, args: Sequence[str]) -> DummyResult:
        raise NginxError("nginx -t failed (exit 1): unknown directive")

    monkeypatch.setattr(NginxProvider, "_run_nginx", fake_run)

    result = provider.install_site("alpha.test", "garbage;")

    assert result.changed is False
    assert result.validation_error is not None
    assert "unknown directive" in result.validation_error
    assert not provider.site_path("alpha.test").exists()


def test_rejected_change_restores_previous_file(
    monkeypatch: pytest.MonkeyPatch,
    provider: NginxProvider,
    calls: list[tuple[str, ...]],
) -> None:
    """A failed validation puts the previous working configuration back."""
    provider.install_site("alpha.test", CONFIG)
    reloads: list[tuple[str, ...]] = []

    def failing_run(self: NginxProvider, args: Sequence[str]) -> DummyResult:
        if list(args) == ["-t"]:
            raise NginxError("nginx -t failed (exit 1): unknown directive")
        reloads.append(tuple(args))
        return DummyResult()

    monkeypatch.setattr(NginxProvider, "_run_nginx", failing_run)

    result = provider.install_site("alpha.test", "garbage;")

    assert result.validation_error is not None
    assert provider.site_path("alpha.test").read_text(encoding="utf-8") == CONFIG
    assert reloads == []


def test_enable_and_disable(provider: NginxProvider, calls: list[tuple[str, ...]]) -> None:
    provider.install_site("alpha.test", CONFIG)

    assert provider.enable("alpha.test") is True
    assert provider.enable("alpha.test") is False
    assert provider.is_enabled("alpha.test") is True

    provider.disable("alpha.test")
    assert provider.is_enabled("alpha.test") is False
    assert provider.site_path("alpha.test").exists()


def test_enable_replaces_stale_symlink(provider: NginxProvider, tmp_path: Path) -> None:
    stale = provider.enabled_path("alpha.test")
    stale.parent.mkdir(parents=True)
    stale.symlink_to(tmp_path / "elsewhere.conf")

    assert provider.enable("alpha.test") is True
    assert stale.resolve() == provider.site_path("alpha.test").resolve()


def test_remove_deletes_config_and_link(
    provider: NginxProvider,
    calls: list[tuple[str, ...]],
) -> None:
    provider.install_site("alpha.test", CONFIG)
    provider.enable("alpha.test")

    provider.remove("alpha.test")

    assert not provider.site_path("alpha.test").exists()
    assert not provider.enabled_path("alpha.test").is_symlink()


def test_run_nginx_raises_on_failure(
    monkeypatch: pytest.MonkeyPatch,
    provider: NginxProvider,
) -> None:
    """A non-zero exit surfaces stderr in the error."""

    def fake_subprocess_run(*args: Any, **kwargs: Any) -> DummyResult:
        return DummyResult(returncode=1, stderr="emerg: bad config\n")

    monkeypatch.setattr(nginx_module.subprocess, "run", fake_subprocess_run)

    with pytest.raises(NginxError, match="failed \\(exit 1\\): emerg: bad config"):
        provider.test_config()


def test_run_nginx_reports_missing_binary(
    monkeypatch: pytest.MonkeyPatch,
    provider: NginxProvider,
) -> None:
    def fake_subprocess_run(*args: Any, **kwargs: Any) -> subprocess.CompletedProcess[str]:
        raise FileNotFoundError("nginx")

    monkeypatch.setattr(nginx_module.subprocess, "run", fake_subprocess_run)

    with pytest.raises(NginxError, match="nginx not found"):
        provider.reload()
