"""Tests for the template rendering engine."""
from __future__ import annotations

from pathlib import Path

import pytest

from releasectl.templates import TemplateEngine, TemplateRenderError, write_if_changed


def _unit_context(domain: str) -> dict[str, object]:
    return {
        "site_domain": domain,
        "service_user": "www-data",
        "working_directory": f"/srv/releasectl/sites/{domain}/current",
        "exec_start": "/usr/bin/env python -m app",
        "port": 8000,
        "environment": [f"RELEASECTL_SITE={domain}"],
        "environment_file": None,
    }


def test_render_to_string_uses_builtin_templates() -> None:
    """Built-in templates render with strict variables."""
    engine = TemplateEngine.with_overrides(None)

    output = engine.render_to_string("systemd/service.j2", _unit_context("api.example.com"))

    assert "releasectl backend (api.example.com)" in output
    assert "Environment=PORT=8000" in output
    assert "Environment=RELEASECTL_SITE=api.example.com" in output
    assert "EnvironmentFile" not in output


def test_missing_variable_raises() -> None:
    """StrictUndefined turns a missing variable into a render error."""
    engine = TemplateEngine.with_overrides(None)
    context = _unit_context("api.example.com")
    del context["exec_start"]

    with pytest.raises(TemplateRenderError, match="exec_start"):
        engine.render_to_string("systemd/service.j2", context)


def test_render_to_path_writes_with_mode(tmp_path: Path) -> None:
    """Rendering to a file writes content and respects the requested mode."""
    engine = TemplateEngine.with_overrides(None)
    destination = tmp_path / "releasectl-api.service"

    changed = engine.render_to_path(
        "systemd/service.j2", destination, _unit_context("api.example.com"), mode=0o600
    )

    assert changed is True
    assert oct(destination.stat().st_mode & 0o777) == "0o600"

    # Second render with same content should be a no-op.
    changed_again = engine.render_to_path(
        "systemd/service.j2", destination, _unit_context("api.example.com"), mode=0o600
    )
    assert changed_again is False


def test_override_path_takes_precedence(tmp_path: Path) -> None:
    """Override templates shadow the built-in ones."""
    override_dir = tmp_path / "templates"
    override_template = override_dir / "systemd" / "service.j2"
    override_template.parent.mkdir(parents=True, exist_ok=True)
    override_template.write_text("override {{ site_domain }}", encoding="utf-8")

    engine = TemplateEngine.with_overrides(override_dir)

    rendered = engine.render_to_string("systemd/service.j2", _unit_context("gamma.example.com"))

    assert rendered == "override gamma.example.com"


def test_write_if_changed_fixes_mode_without_rewriting(tmp_path: Path) -> None:
    """Identical content is left alone apart from its permissions."""
    destination = tmp_path / "site.conf"
    assert write_if_changed(destination, "server {}\n", mode=0o644) is True
    destination.chmod(0o600)

    assert write_if_changed(destination, "server {}\n", mode=0o640) is False
    assert destination.stat().st_mode & 0o777 == 0o640
    assert write_if_changed(destination, "server { }\n", mode=0o640) is True
