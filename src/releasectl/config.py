"""Configuration loader for releasectl.

This module centralises the logic for reading configuration values from
multiple sources, lowest precedence first:

1. Built-in defaults.
2. ``/etc/releasectl/config.yml`` (or an override path).
3. Environment variables prefixed with ``RELEASECTL_``.
4. Explicit overrides supplied programmatically (reserved for CLI flags).

Environment keys use double underscores to express nesting, e.g.::

    export RELEASECTL_PORTS__BASE=9000
    export RELEASECTL_EDGE__API_TOKEN=...

Values are coerced via PyYAML's ``safe_load`` so that booleans and numbers are
parsed naturally. The resulting configuration is exposed as immutable
``dataclasses`` for convenient access and type safety.
"""
from __future__ import annotations

import os
from collections.abc import Mapping, MutableMapping
from dataclasses import dataclass
from pathlib import Path
from typing import cast

import yaml

ENV_PREFIX = "RELEASECTL_"
CONFIG_ENV_VAR = f"{ENV_PREFIX}CONFIG_FILE"
RESERVED_ENV_KEYS = {CONFIG_ENV_VAR}


class ConfigError(RuntimeError):
    """Raised when configuration parsing fails."""


@dataclass(frozen=True)
class PortsConfig:
    """Port allocation defaults for process sites."""

    base: int = 8000
    strategy: str = "sequential"

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {"base": self.base, "strategy": self.strategy}


@dataclass(frozen=True)
class ProxyConfig:
    """Reverse proxy (nginx) settings."""

    sites_available: Path = Path("/etc/nginx/sites-available")
    sites_enabled: Path = Path("/etc/nginx/sites-enabled")
    nginx_bin: str = "nginx"
    log_dir: Path = Path("/var/log/nginx")
    http_port: int = 80
    https_port: int = 443
    timeout_seconds: int = 900
    max_body_size: str = "100m"

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "sites_available": str(self.sites_available),
            "sites_enabled": str(self.sites_enabled),
            "nginx_bin": self.nginx_bin,
            "log_dir": str(self.log_dir),
            "http_port": self.http_port,
            "https_port": self.https_port,
            "timeout_seconds": self.timeout_seconds,
            "max_body_size": self.max_body_size,
        }


@dataclass(frozen=True)
class TLSConfig:
    """Certificate issuance settings."""

    live_dir: Path = Path("/etc/letsencrypt/live")
    acme_webroot: Path = Path("/var/www/letsencrypt")
    certbot_bin: str = "certbot"
    email: str | None = None
    issue_deadline: float = 600.0
    poll_initial: float = 5.0
    poll_max: float = 60.0
    warn_expiry_days: int = 30

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "live_dir": str(self.live_dir),
            "acme_webroot": str(self.acme_webroot),
            "certbot_bin": self.certbot_bin,
            "email": self.email,
            "issue_deadline": self.issue_deadline,
            "poll_initial": self.poll_initial,
            "poll_max": self.poll_max,
            "warn_expiry_days": self.warn_expiry_days,
        }


@dataclass(frozen=True)
class EdgeConfig:
    """DNS/edge provider credentials and propagation policy."""

    provider: str = "cloudflare"
    api_base: str = "https://api.cloudflare.com/client/v4"
    api_token: str | None = None
    zone_id: str | None = None
    propagation_deadline: float = 120.0

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation (token redacted)."""
        return {
            "provider": self.provider,
            "api_base": self.api_base,
            "api_token": "***" if self.api_token else None,
            "zone_id": self.zone_id,
            "propagation_deadline": self.propagation_deadline,
        }


@dataclass(frozen=True)
class HealthConfig:
    """Health-check gate settings."""

    attempts: int = 10
    initial_delay: float = 1.0
    max_delay: float = 10.0
    timeout: float = 5.0
    static_origin: str = "http://127.0.0.1"

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "attempts": self.attempts,
            "initial_delay": self.initial_delay,
            "max_delay": self.max_delay,
            "timeout": self.timeout,
            "static_origin": self.static_origin,
        }


@dataclass(frozen=True)
class BackupConfig:
    """Backup storage and retention defaults."""

    root: Path
    index: Path
    retention_days: int = 14
    schedule: str = "*-*-* 03:00:00"

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "root": str(self.root),
            "index": str(self.index),
            "retention_days": self.retention_days,
            "schedule": self.schedule,
        }


@dataclass(frozen=True)
class DatabaseConfig:
    """PostgreSQL client tool locations."""

    psql_bin: str = "psql"
    pg_dump_bin: str = "pg_dump"
    pg_restore_bin: str = "pg_restore"
    schema: str = "public"

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "psql_bin": self.psql_bin,
            "pg_dump_bin": self.pg_dump_bin,
            "pg_restore_bin": self.pg_restore_bin,
            "schema": self.schema,
        }


@dataclass(frozen=True)
class SystemdConfig:
    """Systemd integration configuration values."""

    unit_dir: Path | None = None
    systemctl_bin: str = "systemctl"
    journalctl_bin: str = "journalctl"

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "unit_dir": str(self.unit_dir) if self.unit_dir is not None else None,
            "systemctl_bin": self.systemctl_bin,
            "journalctl_bin": self.journalctl_bin,
        }


@dataclass(frozen=True)
class AppConfig:
    """Resolved configuration values for releasectl."""

    config_file: Path
    state_dir: Path
    registry_dir: Path
    logs_dir: Path
    runtime_dir: Path
    templates_dir: Path
    releases_root: Path
    sites_root: Path
    lock_timeout: float
    service_user: str
    ports: PortsConfig
    proxy: ProxyConfig
    tls: TLSConfig
    edge: EdgeConfig
    health: HealthConfig
    backups: BackupConfig
    database: DatabaseConfig
    systemd: SystemdConfig

    def to_dict(self) -> dict[str, object]:
        """Return a JSON-serialisable representation of the config."""
        return {
            "config_file": str(self.config_file),
            "state_dir": str(self.state_dir),
            "registry_dir": str(self.registry_dir),
            "logs_dir": str(self.logs_dir),
            "runtime_dir": str(self.runtime_dir),
            "templates_dir": str(self.templates_dir),
            "releases_root": str(self.releases_root),
            "sites_root": str(self.sites_root),
            "lock_timeout": self.lock_timeout,
            "service_user": self.service_user,
            "ports": self.ports.to_dict(),
            "proxy": self.proxy.to_dict(),
            "tls": self.tls.to_dict(),
            "edge": self.edge.to_dict(),
            "health": self.health.to_dict(),
            "backups": self.backups.to_dict(),
            "database": self.database.to_dict(),
            "systemd": self.systemd.to_dict(),
        }


DEFAULTS: dict[str, object] = {
    "config_file": "/etc/releasectl/config.yml",
    "state_dir": "/var/lib/releasectl",
    "registry_dir": None,  # derived from state_dir when absent
    "logs_dir": "/var/log/releasectl",
    "runtime_dir": "/run/releasectl",
    "templates_dir": "/etc/releasectl/templates",
    "releases_root": "/srv/releasectl/releases",
    "sites_root": "/srv/releasectl/sites",
    "lock_timeout": 0.0,
    "service_user": "www-data",
    "ports": {"base": 8000, "strategy": "sequential"},
    "proxy": {
        "sites_available": "/etc/nginx/sites-available",
        "sites_enabled": "/etc/nginx/sites-enabled",
        "nginx_bin": "nginx",
        "log_dir": "/var/log/nginx",
        "http_port": 80,
        "https_port": 443,
        "timeout_seconds": 900,
        "max_body_size": "100m",
    },
    "tls": {
        "live_dir": "/etc/letsencrypt/live",
        "acme_webroot": "/var/www/letsencrypt",
        "certbot_bin": "certbot",
        "email": None,
        "issue_deadline": 600.0,
        "poll_initial": 5.0,
        "poll_max": 60.0,
        "warn_expiry_days": 30,
    },
    "edge": {
        "provider": "cloudflare",
        "api_base": "https://api.cloudflare.com/client/v4",
        "api_token": None,
        "zone_id": None,
        "propagation_deadline": 120.0,
    },
    "health": {
        "attempts": 10,
        "initial_delay": 1.0,
        "max_delay": 10.0,
        "timeout": 5.0,
        "static_origin": "http://127.0.0.1",
    },
    "backups": {
        "root": "/var/backups/releasectl",
        "index": None,
        "retention_days": 14,
        "schedule": "*-*-* 03:00:00",
    },
    "database": {
        "psql_bin": "psql",
        "pg_dump_bin": "pg_dump",
        "pg_restore_bin": "pg_restore",
        "schema": "public",
    },
    "systemd": {
        "unit_dir": None,
        "systemctl_bin": "systemctl",
        "journalctl_bin": "journalctl",
    },
}

ALLOWED_TOP_LEVEL_KEYS = set(DEFAULTS.keys())
ALLOWED_PORT_STRATEGIES = {"sequential"}
ALLOWED_EDGE_PROVIDERS = {"cloudflare"}


def load_config(
    config_file: str | os.PathLike[str] | None = None,
    *,
    env: Mapping[str, str] | None = None,
    overrides: Mapping[str, object] | None = None,
) -> AppConfig:
    """Load and merge configuration sources into an :class:`AppConfig`."""
    merged: dict[str, object] = _deep_copy(DEFAULTS)
    resolved_env = dict(os.environ if env is None else env)

    config_default = _expect_str(merged["config_file"], "config_file")
    config_path = _determine_config_path(config_default, config_file, resolved_env)

    file_values = _load_yaml_file(config_path)
    if file_values:
        _deep_merge(merged, file_values)

    env_values = _build_env_overrides(resolved_env)
    if env_values:
        _deep_merge(merged, env_values)

    if overrides:
        _deep_merge(merged, dict(overrides))

    merged["config_file"] = str(config_path)

    _validate_structure(merged)

    return _build_app_config(merged)


def _determine_config_path(
    default_path: str,
    cli_override: str | os.PathLike[str] | None,
    env: Mapping[str, str],
) -> Path:
    if cli_override:
        return Path(cli_override)
    if CONFIG_ENV_VAR in env:
        return Path(env[CONFIG_ENV_VAR])
    return Path(default_path)


def _load_yaml_file(path: Path) -> dict[str, object]:
    if not path.exists():
        return {}
    try:
        data = yaml.safe_load(path.read_text(encoding="utf-8")) or {}
    except yaml.YAMLError as exc:  # pragma: no cover - PyYAML owns detailed error
        raise ConfigError(f"Failed to parse config file {path}: {exc}") from exc
    if not isinstance(data, Mapping):
        raise ConfigError(f"Config file {path} must contain a mapping at the top level.")
    return _as_dict(data, f"file:{path}")


def _validate_structure(raw: Mapping[str, object]) -> None:
    unknown_keys = set(raw.keys()) - ALLOWED_TOP_LEVEL_KEYS
    if unknown_keys:
        joined = ", ".join(sorted(unknown_keys))
        raise ConfigError(f"Unknown configuration keys: {joined}.")

    for section, defaults in DEFAULTS.items():
        if not isinstance(defaults, Mapping):
            continue
        value = raw.get(section)
        if value is None:
            continue
        section_map = _as_dict(value, section)
        unknown = set(section_map.keys()) - set(defaults.keys())
        if unknown:
            joined = ", ".join(sorted(unknown))
            raise ConfigError(f"Unknown {section} configuration keys: {joined}.")

    ports_map = _as_dict(raw.get("ports"), "ports")
    strategy = ports_map.get("strategy")
    if strategy is not None and str(strategy) not in ALLOWED_PORT_STRATEGIES:
        allowed = ", ".join(sorted(ALLOWED_PORT_STRATEGIES))
        raise ConfigError(
            f"Unsupported port allocation strategy '{strategy}'. Allowed: {allowed}."
        )

    edge_map = _as_dict(raw.get("edge"), "edge")
    provider = edge_map.get("provider")
    if provider is not None and str(provider) not in ALLOWED_EDGE_PROVIDERS:
        allowed = ", ".join(sorted(ALLOWED_EDGE_PROVIDERS))
        raise ConfigError(f"Unsupported edge provider '{provider}'. Allowed: {allowed}.")


def _build_app_config(raw: Mapping[str, object]) -> AppConfig:
    state_dir = _to_path(raw.get("state_dir"))
    registry_dir_value = raw.get("registry_dir")
    registry_dir = _to_path(registry_dir_value) if registry_dir_value else state_dir / "registry"
    lock_timeout = _expect_float(
        raw.get("lock_timeout"), "lock_timeout", default=0.0, minimum=0.0
    )

    ports_mapping = _as_dict(raw.get("ports"), "ports")
    ports = PortsConfig(
        base=_expect_int(ports_mapping.get("base"), "ports.base", default=8000),
        strategy=str(ports_mapping.get("strategy", "sequential")),
    )
    if ports.base < 1 or ports.base > 65535:
        raise ConfigError("ports.base must be between 1 and 65535.")

    proxy_mapping = _as_dict(raw.get("proxy"), "proxy")
    proxy = ProxyConfig(
        sites_available=_to_path(proxy_mapping.get("sites_available")),
        sites_enabled=_to_path(proxy_mapping.get("sites_enabled")),
        nginx_bin=str(proxy_mapping.get("nginx_bin", "nginx")),
        log_dir=_to_path(proxy_mapping.get("log_dir")),
        http_port=_expect_int(proxy_mapping.get("http_port"), "proxy.http_port", default=80),
        https_port=_expect_int(proxy_mapping.get("https_port"), "proxy.https_port", default=443),
        timeout_seconds=_expect_int(
            proxy_mapping.get("timeout_seconds"), "proxy.timeout_seconds", default=900
        ),
        max_body_size=str(proxy_mapping.get("max_body_size", "100m")),
    )
    if proxy.timeout_seconds <= 0:
        raise ConfigError("proxy.timeout_seconds must be greater than zero.")

    tls_mapping = _as_dict(raw.get("tls"), "tls")
    email_value = tls_mapping.get("email")
    tls = TLSConfig(
        live_dir=_to_path(tls_mapping.get("live_dir")),
        acme_webroot=_to_path(tls_mapping.get("acme_webroot")),
        certbot_bin=str(tls_mapping.get("certbot_bin", "certbot")),
        email=str(email_value) if email_value else None,
        issue_deadline=_expect_float(
            tls_mapping.get("issue_deadline"), "tls.issue_deadline", default=600.0
        ),
        poll_initial=_expect_float(
            tls_mapping.get("poll_initial"), "tls.poll_initial", default=5.0
        ),
        poll_max=_expect_float(tls_mapping.get("poll_max"), "tls.poll_max", default=60.0),
        warn_expiry_days=_expect_int(
            tls_mapping.get("warn_expiry_days"), "tls.warn_expiry_days", default=30
        ),
    )
    if tls.warn_expiry_days < 0:
        raise ConfigError("tls.warn_expiry_days must be non-negative.")

    edge_mapping = _as_dict(raw.get("edge"), "edge")
    token_value = edge_mapping.get("api_token")
    zone_value = edge_mapping.get("zone_id")
    edge = EdgeConfig(
        provider=str(edge_mapping.get("provider", "cloudflare")),
        api_base=str(edge_mapping.get("api_base", "https://api.cloudflare.com/client/v4")),
        api_token=str(token_value) if token_value else None,
        zone_id=str(zone_value) if zone_value else None,
        propagation_deadline=_expect_float(
            edge_mapping.get("propagation_deadline"),
            "edge.propagation_deadline",
            default=120.0,
        ),
    )

    health_mapping = _as_dict(raw.get("health"), "health")
    health = HealthConfig(
        attempts=_expect_int(health_mapping.get("attempts"), "health.attempts", default=10),
        initial_delay=_expect_float(
            health_mapping.get("initial_delay"), "health.initial_delay", default=1.0, minimum=0.0
        ),
        max_delay=_expect_float(
            health_mapping.get("max_delay"), "health.max_delay", default=10.0, minimum=0.0
        ),
        timeout=_expect_float(health_mapping.get("timeout"), "health.timeout", default=5.0),
        static_origin=str(health_mapping.get("static_origin", "http://127.0.0.1")).rstrip("/"),
    )
    if health.attempts < 1:
        raise ConfigError("health.attempts must be at least 1.")

    backups_mapping = _as_dict(raw.get("backups"), "backups")
    backups_root = _to_path(backups_mapping.get("root"))
    backups_index_value = backups_mapping.get("index")
    backups_index = (
        _to_path(backups_index_value) if backups_index_value else backups_root / "backups.json"
    )
    retention_days = _expect_int(
        backups_mapping.get("retention_days"), "backups.retention_days", default=14
    )
    if retention_days < 1:
        raise ConfigError("backups.retention_days must be at least 1.")
    backups = BackupConfig(
        root=backups_root,
        index=backups_index,
        retention_days=retention_days,
        schedule=str(backups_mapping.get("schedule", "*-*-* 03:00:00")),
    )

    database_mapping = _as_dict(raw.get("database"), "database")
    database = DatabaseConfig(
        psql_bin=str(database_mapping.get("psql_bin", "psql")),
        pg_dump_bin=str(database_mapping.get("pg_dump_bin", "pg_dump")),
        pg_restore_bin=str(database_mapping.get("pg_restore_bin", "pg_restore")),
        schema=str(database_mapping.get("schema", "public")),
    )

    systemd_mapping = _as_dict(raw.get("systemd"), "systemd")
    unit_dir_value = systemd_mapping.get("unit_dir")
    systemd = SystemdConfig(
        unit_dir=_to_path(unit_dir_value) if unit_dir_value else None,
        systemctl_bin=str(systemd_mapping.get("systemctl_bin", "systemctl")),
        journalctl_bin=str(systemd_mapping.get("journalctl_bin", "journalctl")),
    )

    return AppConfig(
        config_file=_to_path(raw.get("config_file")),
        state_dir=state_dir,
        registry_dir=registry_dir,
        logs_dir=_to_path(raw.get("logs_dir")),
        runtime_dir=_to_path(raw.get("runtime_dir")),
        templates_dir=_to_path(raw.get("templates_dir")),
        releases_root=_to_path(raw.get("releases_root")),
        sites_root=_to_path(raw.get("sites_root")),
        lock_timeout=lock_timeout,
        service_user=str(raw.get("service_user", "www-data")),
        ports=ports,
        proxy=proxy,
        tls=tls,
        edge=edge,
        health=health,
        backups=backups,
        database=database,
        systemd=systemd,
    )


def _build_env_overrides(env: Mapping[str, str]) -> dict[str, object]:
    overrides: dict[str, object] = {}
    for key, value in env.items():
        if key in RESERVED_ENV_KEYS:
            continue
        if not key.startswith(ENV_PREFIX):
            continue
        suffix = key[len(ENV_PREFIX) :]
        path_segments = [segment.lower() for segment in suffix.split("__") if segment]
        if not path_segments:
            continue
        _assign_nested(overrides, path_segments, _coerce_value(value))
    return overrides


def _assign_nested(tree: MutableMapping[str, object], path: list[str], value: object) -> None:
    current: MutableMapping[str, object] = tree
    for segment in path[:-1]:
        existing = current.get(segment)
        if existing is None:
            new_child: MutableMapping[str, object] = {}
            current[segment] = new_child
            current = new_child
            continue
        if isinstance(existing, MutableMapping):
            current = cast(MutableMapping[str, object], existing)
            continue
        raise ConfigError(
            "Environment overrides conflict with existing scalar value at "
            f"{'.'.join(path)}"
        )
    current[path[-1]] = value


def _deep_merge(target: MutableMapping[str, object], overrides: Mapping[str, object]) -> None:
    for key, value in overrides.items():
        existing = target.get(key)
        if isinstance(existing, MutableMapping) and isinstance(value, Mapping):
            _deep_merge(existing, _as_dict(value, f"merge.{key}"))
            continue
        target[key] = value


def _deep_copy(source: Mapping[str, object]) -> dict[str, object]:
    result: dict[str, object] = {}
    for key, value in source.items():
        if isinstance(value, Mapping):
            result[key] = _deep_copy(_as_dict(value, f"copy.{key}"))
        else:
            result[key] = value
    return result


def _coerce_value(raw: str) -> object:
    raw = raw.strip()
    try:
        parsed = yaml.safe_load(raw)
    except yaml.YAMLError:  # pragma: no cover - treat as string if parsing fails
        return raw
    return parsed


def _to_path(value: object) -> Path:
    if value is None:
        raise ConfigError("Expected a filesystem path, received None.")
    if isinstance(value, Path):
        return value.expanduser()
    if isinstance(value, str):
        return Path(value).expanduser()
    raise ConfigError(f"Cannot convert value {value!r} to Path.")


def _expect_int(value: object | None, label: str, *, default: int) -> int:
    if value is None:
        return default
    if isinstance(value, bool):
        raise ConfigError(f"Expected {label} to be an integer. Got boolean {value!r}.")
    if isinstance(value, int):
        return value
    if isinstance(value, str):
        try:
            return int(value, 0)
        except ValueError as exc:
            raise ConfigError(f"Invalid integer for {label}: {value!r}.") from exc
    raise ConfigError(f"Expected {label} to be an integer. Got {type(value).__name__}.")


def _expect_str(value: object, key: str) -> str:
    if isinstance(value, str):
        return value
    raise ConfigError(f"Expected {key} to resolve to a string. Got {value!r}.")


def _expect_float(
    value: object | None,
    label: str,
    *,
    default: float,
    minimum: float | None = None,
) -> float:
    """Return *value* as a float; positive unless *minimum* allows zero."""
    if value is None:
        return float(default)
    if isinstance(value, bool):
        raise ConfigError(f"Expected {label} to be a number. Got boolean {value!r}.")
    if isinstance(value, (int, float)):
        numeric = float(value)
    elif isinstance(value, str):
        try:
            numeric = float(value)
        except ValueError as exc:
            raise ConfigError(f"Invalid number for {label}: {value!r}.") from exc
    else:
        raise ConfigError(
            f"Expected {label} to be numeric. Got {type(value).__name__}."
        )
    if minimum is None:
        if numeric <= 0:
            raise ConfigError(f"{label} must be greater than zero. Got {numeric}.")
    elif numeric < minimum:
        raise ConfigError(f"{label} must be at least {minimum}. Got {numeric}.")
    return numeric


def _as_dict(value: object | None, label: str) -> dict[str, object]:
    if value is None:
        return {}
    if not isinstance(value, Mapping):
        raise ConfigError(f"Expected {label} to be a mapping. Got {type(value).__name__}.")
    result: dict[str, object] = {}
    for key, item in value.items():
        if not isinstance(key, str):
            raise ConfigError(f"Mapping {label} must use string keys. Got {key!r}.")
        result[key] = item
    return result


__all__ = [
    "AppConfig",
    "BackupConfig",
    "ConfigError",
    "DatabaseConfig",
    "EdgeConfig",
    "HealthConfig",
    "PortsConfig",
    "ProxyConfig",
    "SystemdConfig",
    "TLSConfig",
    "load_config",
]
