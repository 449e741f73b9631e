"""Helpers for interacting with the releasectl state registry.

The registry directory (``/var/lib/releasectl/registry`` by default) stores
YAML artifacts. Each domain owns its own files so that operations on
different domains never contend for the same file:

* ``sites/<domain>.yml``: the Site record.
* ``releases/<domain>.yml``: the release ledger of the site.
* ``migrations/<domain>.yml``: the append-only migration ledger.
* ``ports.yml``: port reservations shared across process sites.

Every write goes through a temporary file followed by ``os.replace`` so a
crash mid-write leaves the previous content intact.
"""
from __future__ import annotations

import os
import tempfile
from collections.abc import Iterable, Mapping
from copy import deepcopy
from dataclasses import dataclass
from pathlib import Path
from typing import Any

import yaml


class StateRegistryError(RuntimeError):
    """Raised when state registry operations fail."""


@dataclass(frozen=True)
class StateRegistry:
    """High-level interface to the YAML registry."""

    root: Path

    def __post_init__(self) -> None:
        """Normalise the root path after initialisation."""
        object.__setattr__(self, "root", self.root.expanduser())

    def ensure_root(self) -> None:
        """Create the registry directory if it does not yet exist."""
        self.root.mkdir(parents=True, exist_ok=True)

    # ------------------------------------------------------------------
    # Public helpers
    # ------------------------------------------------------------------
    def path_for(self, name: str) -> Path:
        """Return the filesystem path for a named registry file."""
        return self.root / name

    def read(self, name: str, *, default: object | None = None) -> object | None:
        """Read a registry file, returning *default* when missing."""
        path = self.path_for(name)
        if not path.exists():
            return deepcopy(default)
        try:
            data = yaml.safe_load(path.read_text(encoding="utf-8"))
        except yaml.YAMLError as exc:  # pragma: no cover - delegated to PyYAML
            raise StateRegistryError(f"Failed to parse registry file {path}: {exc}") from exc
        return data if data is not None else deepcopy(default)

    def write(self, name: str, payload: Mapping[str, object]) -> None:
        """Atomically write *payload* to the given registry file."""
        path = self.path_for(name)
        path.parent.mkdir(parents=True, exist_ok=True)

        tmp_fd, tmp_name = tempfile.mkstemp(dir=str(path.parent), prefix=f".{path.name}.")
        tmp_path = Path(tmp_name)
        try:
            with os.fdopen(tmp_fd, "w", encoding="utf-8") as handle:
                yaml.safe_dump(payload, handle, sort_keys=False)
                handle.flush()
                os.fsync(handle.fileno())
            os.replace(tmp_path, path)
            os.chmod(path, 0o640)
        finally:
            tmp_path.unlink(missing_ok=True)

    def delete(self, name: str) -> bool:
        """Remove a registry file; return True when it existed."""
        path = self.path_for(name)
        try:
            path.unlink()
        except FileNotFoundError:
            return False
        return True

    # Site files -------------------------------------------------------
    def read_site(self, domain: str) -> dict[str, Any] | None:
        """Return the stored mapping for *domain*, if declared."""
        value = self.read(_domain_file("sites", domain))
        if value is None:
            return None
        if not isinstance(value, Mapping):
            raise StateRegistryError(f"Site record for '{domain}' must be a mapping.")
        return dict(value)

    def write_site(self, domain: str, entry: Mapping[str, object]) -> None:
        """Persist the site mapping for *domain*."""
        self.write(_domain_file("sites", domain), dict(entry))

    def delete_site(self, domain: str) -> bool:
        """Remove the site mapping for *domain*."""
        return self.delete(_domain_file("sites", domain))

    def site_domains(self) -> list[str]:
        """Return the domains with a stored site record, sorted."""
        directory = self.root / "sites"
        if not directory.is_dir():
            return []
        return sorted(
            path.stem for path in directory.glob("*.yml") if not path.name.startswith(".")
        )

    # Release ledger ---------------------------------------------------
    def read_releases(self, domain: str) -> list[dict[str, Any]]:
        """Return the release entries recorded for *domain*."""
        value = self.read(_domain_file("releases", domain), default={"releases": []})
        return _entries(value, "releases")

    def write_releases(self, domain: str, releases: Iterable[Mapping[str, object]]) -> None:
        """Persist the release entries for *domain*."""
        self.write(
            _domain_file("releases", domain),
            {"releases": [dict(item) for item in releases]},
        )

    # Migration ledger -------------------------------------------------
    def read_migrations(self, domain: str) -> list[dict[str, Any]]:
        """Return the migration ledger entries for *domain*."""
        value = self.read(_domain_file("migrations", domain), default={"migrations": []})
        return _entries(value, "migrations")

    def append_migration(self, domain: str, entry: Mapping[str, object]) -> None:
        """Append *entry* to the migration ledger for *domain*."""
        entries = self.read_migrations(domain)
        entries.append(dict(entry))
        self.write(_domain_file("migrations", domain), {"migrations": entries})

    # Ports ------------------------------------------------------------
    def read_ports(self) -> Mapping[str, object]:
        """Return the contents of ``ports.yml`` (empty mapping if missing)."""
        value = self.read("ports.yml", default={"ports": []})
        return value if isinstance(value, Mapping) else {"ports": []}

    def write_ports(self, ports: Iterable[object]) -> None:
        """Persist port reservations to ``ports.yml``."""
        self.write("ports.yml", {"ports": list(ports)})


def _domain_file(kind: str, domain: str) -> str:
    normalized = domain.strip().lower()
    if not normalized or "/" in normalized or normalized.startswith("."):
        raise StateRegistryError(f"Invalid domain name {domain!r}.")
    return f"{kind}/{normalized}.yml"


def _entries(value: object, key: str) -> list[dict[str, Any]]:
    if not isinstance(value, Mapping):
        return []
    raw = value.get(key, [])
    if not isinstance(raw, list):
        raise StateRegistryError(f"Registry key '{key}' must be a list.")
    return [dict(item) for item in raw if isinstance(item, Mapping)]


__all__ = ["StateRegistry", "StateRegistryError"]
