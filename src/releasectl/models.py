"""Record types persisted by the registry and ledgers."""
from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field, replace
from datetime import UTC, datetime
from enum import Enum
from typing import Any


def now_iso() -> str:
    """Return the current UTC time as an ISO-8601 string with a ``Z`` suffix."""
    return datetime.now(tz=UTC).isoformat(timespec="seconds").replace("+00:00", "Z")


def parse_iso(value: object) -> datetime | None:
    """Parse an ISO timestamp written by :func:`now_iso` (or ``None``)."""
    if not isinstance(value, str) or not value.strip():
        return None
    text = value.strip()
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    try:
        parsed = datetime.fromisoformat(text)
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=UTC)
    return parsed


class SiteKind(str, Enum):
    """Deployable site flavours."""

    STATIC = "static"
    PROCESS = "process"


class TlsState(str, Enum):
    """Position of a domain in the DNS-mode / certificate machine."""

    DNS_ONLY = "dns_only"
    ISSUING = "issuing"
    ISSUED_VERIFIED = "issued_verified"
    PROXIED = "proxied"

    @property
    def has_certificate(self) -> bool:
        """Return True when a verified certificate is installed."""
        return self in {TlsState.ISSUED_VERIFIED, TlsState.PROXIED}


TLS_TRANSITIONS: Mapping[TlsState, frozenset[TlsState]] = {
    TlsState.DNS_ONLY: frozenset({TlsState.ISSUING}),
    TlsState.ISSUING: frozenset({TlsState.ISSUED_VERIFIED, TlsState.DNS_ONLY}),
    TlsState.ISSUED_VERIFIED: frozenset({TlsState.PROXIED}),
    TlsState.PROXIED: frozenset(),
}


class ReleaseStatus(str, Enum):
    """Lifecycle of a release record."""

    STAGED = "staged"
    ACTIVE = "active"
    INACTIVE = "inactive"
    ROLLED_BACK = "rolled_back"


class MigrationMode(str, Enum):
    """Kinds of entries in the migration ledger."""

    INCREMENTAL = "incremental"
    DESTRUCTIVE_RESET = "destructive_reset"
    RESTORE = "restore"
    REVERT = "revert"


@dataclass(slots=True, frozen=True)
class Site:
    """A declared deployable unit bound to a domain."""

    domain: str
    kind: SiteKind
    port: int | None = None
    tls_state: TlsState = TlsState.DNS_ONLY
    current_release_id: str | None = None
    service: str | None = None
    command: str | None = None
    database_url: str | None = None
    health_path: str = "/health"
    created_at: str | None = None
    updated_at: str | None = None

    @property
    def is_process(self) -> bool:
        """Return True for long-running backend sites."""
        return self.kind is SiteKind.PROCESS

    def evolve(self, **changes: Any) -> Site:
        """Return a copy of the site with *changes* applied."""
        return replace(self, **changes)

    def to_dict(self) -> dict[str, object]:
        """Return the registry representation of the site."""
        payload: dict[str, object] = {
            "domain": self.domain,
            "kind": self.kind.value,
            "port": self.port,
            "tls_state": self.tls_state.value,
            "current_release_id": self.current_release_id,
        }
        if self.service:
            payload["service"] = self.service
        if self.command:
            payload["command"] = self.command
        if self.database_url:
            payload["database_url"] = self.database_url
        payload["health_path"] = self.health_path
        payload["created_at"] = self.created_at
        payload["updated_at"] = self.updated_at
        return payload

    @classmethod
    def from_mapping(cls, entry: Mapping[str, object]) -> Site:
        """Build a site from a registry mapping."""
        port_raw = entry.get("port")
        release_raw = entry.get("current_release_id")
        return cls(
            domain=str(entry["domain"]),
            kind=SiteKind(str(entry.get("kind", "static"))),
            port=int(str(port_raw)) if port_raw not in (None, "") else None,
            tls_state=TlsState(str(entry.get("tls_state", TlsState.DNS_ONLY.value))),
            current_release_id=str(release_raw) if release_raw else None,
            service=_optional_str(entry.get("service")),
            command=_optional_str(entry.get("command")),
            database_url=_optional_str(entry.get("database_url")),
            health_path=str(entry.get("health_path") or "/health"),
            created_at=_optional_str(entry.get("created_at")),
            updated_at=_optional_str(entry.get("updated_at")),
        )


@dataclass(slots=True, frozen=True)
class Release:
    """One content-addressed artifact activation for a site."""

    id: str
    site_domain: str
    artifact_digest: str
    status: ReleaseStatus = ReleaseStatus.STAGED
    health_check_result: str | None = None
    path: str | None = None
    created_at: str | None = None
    activated_at: str | None = None
    failure: Mapping[str, object] | None = None

    def evolve(self, **changes: Any) -> Release:
        """Return a copy of the release with *changes* applied."""
        return replace(self, **changes)

    def to_dict(self) -> dict[str, object]:
        """Return the ledger representation of the release."""
        payload: dict[str, object] = {
            "id": self.id,
            "site_domain": self.site_domain,
            "artifact_digest": self.artifact_digest,
            "status": self.status.value,
            "health_check_result": self.health_check_result,
            "path": self.path,
            "created_at": self.created_at,
            "activated_at": self.activated_at,
        }
        if self.failure:
            payload["failure"] = dict(self.failure)
        return payload

    @classmethod
    def from_mapping(cls, entry: Mapping[str, object]) -> Release:
        """Build a release from a ledger mapping."""
        failure = entry.get("failure")
        return cls(
            id=str(entry["id"]),
            site_domain=str(entry["site_domain"]),
            artifact_digest=str(entry["artifact_digest"]),
            status=ReleaseStatus(str(entry.get("status", ReleaseStatus.STAGED.value))),
            health_check_result=_optional_str(entry.get("health_check_result")),
            path=_optional_str(entry.get("path")),
            created_at=_optional_str(entry.get("created_at")),
            activated_at=_optional_str(entry.get("activated_at")),
            failure=dict(failure) if isinstance(failure, Mapping) else None,
        )


@dataclass(slots=True, frozen=True)
class MigrationRecord:
    """Append-only ledger entry describing a schema change."""

    site_domain: str
    applied_version: int
    mode: MigrationMode
    applied_at: str = field(default_factory=now_iso)
    name: str | None = None
    backup_id: str | None = None

    def to_dict(self) -> dict[str, object]:
        """Return the ledger representation of the record."""
        payload: dict[str, object] = {
            "site_domain": self.site_domain,
            "applied_version": self.applied_version,
            "applied_at": self.applied_at,
            "mode": self.mode.value,
        }
        if self.name:
            payload["name"] = self.name
        if self.backup_id:
            payload["backup_id"] = self.backup_id
        return payload

    @classmethod
    def from_mapping(cls, entry: Mapping[str, object]) -> MigrationRecord:
        """Build a record from a ledger mapping."""
        return cls(
            site_domain=str(entry["site_domain"]),
            applied_version=int(str(entry.get("applied_version", 0))),
            mode=MigrationMode(str(entry.get("mode", MigrationMode.INCREMENTAL.value))),
            applied_at=str(entry.get("applied_at") or ""),
            name=_optional_str(entry.get("name")),
            backup_id=_optional_str(entry.get("backup_id")),
        )


def _optional_str(value: object) -> str | None:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


__all__ = [
    "MigrationMode",
    "MigrationRecord",
    "Release",
    "ReleaseStatus",
    "Site",
    "SiteKind",
    "TLS_TRANSITIONS",
    "TlsState",
    "now_iso",
    "parse_iso",
]
