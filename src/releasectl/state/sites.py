"""Site registry: the durable owner of Site and Release records."""
from __future__ import annotations

import re
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass

from ..errors import ConflictError, InvalidTransitionError, NotFoundError, PreconditionError
from ..locking import RECORD_SCOPE, RELEASE_SCOPE, LockManager
from ..models import (
    TLS_TRANSITIONS,
    MigrationRecord,
    Release,
    ReleaseStatus,
    Site,
    SiteKind,
    TlsState,
    now_iso,
)
from ..ports import PortsRegistry, PortsRegistryError
from .registry import StateRegistry

# Read-modify-write of a single domain's files waits briefly instead of failing.
_RECORD_LOCK_TIMEOUT = 10.0


@dataclass(frozen=True)
class SiteSpec:
    """Declaration input for :meth:`SiteRegistry.declare`."""

    domain: str
    kind: SiteKind
    port: int | None = None
    service: str | None = None
    command: str | None = None
    database_url: str | None = None
    health_path: str = "/health"


def validate_domain(value: str) -> str:
    """Validate and normalise a domain/FQDN."""
    normalised = value.strip().lower()
    if not normalised:
        raise PreconditionError("Domain must be a non-empty string.")
    if len(normalised) > 255:
        raise PreconditionError("Domain must be 255 characters or fewer.")
    if normalised.startswith(("-", ".")) or normalised.endswith(("-", ".")):
        raise PreconditionError("Domain cannot start or end with a hyphen or dot.")
    if not re.fullmatch(r"[a-z0-9.-]+", normalised):
        raise PreconditionError("Domain may contain letters, numbers, dots, and hyphens.")
    return normalised


class SiteRegistry:
    """Declare sites and track their TLS state, releases and migration ledger."""

    def __init__(self, state: StateRegistry, ports: PortsRegistry, locks: LockManager) -> None:
        """Bind the registry to its storage, port allocator and lock manager."""
        self._state = state
        self._ports = ports
        self._locks = locks

    # Sites ------------------------------------------------------------
    def declare(self, spec: SiteSpec) -> Site:
        """Declare a site; identical re-declarations are no-ops."""
        domain = validate_domain(spec.domain)
        if spec.kind is SiteKind.STATIC and spec.port is not None:
            raise PreconditionError("Static sites do not take a port.")

        with self._locks.global_lock(timeout=_RECORD_LOCK_TIMEOUT, operation="declare"):
            existing = self.find(domain)
            if existing is not None:
                if existing.kind is not spec.kind:
                    raise ConflictError(
                        f"Site '{domain}' is already declared as {existing.kind.value}."
                    )
                if spec.port is not None and existing.port != spec.port:
                    raise ConflictError(
                        f"Site '{domain}' is already declared on port {existing.port}."
                    )
                return existing

            port: int | None = None
            if spec.kind is SiteKind.PROCESS:
                try:
                    port = self._ports.reserve(domain, requested_port=spec.port)
                except PortsRegistryError as exc:
                    raise ConflictError(str(exc)) from exc

            timestamp = now_iso()
            site = Site(
                domain=domain,
                kind=spec.kind,
                port=port,
                service=spec.service or (domain if spec.kind is SiteKind.PROCESS else None),
                command=spec.command,
                database_url=spec.database_url,
                health_path=spec.health_path or "/health",
                created_at=timestamp,
                updated_at=timestamp,
            )
            self._state.write_site(domain, site.to_dict())
            return site

    def find(self, domain: str) -> Site | None:
        """Return the site for *domain* or ``None``."""
        entry = self._state.read_site(validate_domain(domain))
        return Site.from_mapping(entry) if entry is not None else None

    def get(self, domain: str) -> Site:
        """Return the site for *domain* or raise :class:`NotFoundError`."""
        site = self.find(domain)
        if site is None:
            raise NotFoundError(f"Site '{domain}' is not declared.")
        return site

    def list_sites(self) -> list[Site]:
        """Return every declared site sorted by domain."""
        sites: list[Site] = []
        for domain in self._state.site_domains():
            entry = self._state.read_site(domain)
            if entry is not None:
                sites.append(Site.from_mapping(entry))
        return sites

    def update_tls_state(self, domain: str, new_state: TlsState, *, force: bool = False) -> Site:
        """Move *domain* to *new_state*, validating the transition table."""
        with self._record(domain):
            site = self.get(domain)
            if site.tls_state is new_state:
                return site
            allowed = TLS_TRANSITIONS[site.tls_state]
            if not force and new_state not in allowed:
                raise InvalidTransitionError(
                    f"TLS state of '{site.domain}' cannot move from "
                    f"{site.tls_state.value} to {new_state.value}."
                )
            updated = site.evolve(tls_state=new_state, updated_at=now_iso())
            self._state.write_site(site.domain, updated.to_dict())
            return updated

    def set_active_release(self, domain: str, release_id: str | None) -> Site:
        """Point ``current_release_id`` at *release_id*.

        The swap happens under the domain's release lock; if another swap for
        the domain is in flight this raises ``AlreadyInProgressError``.
        """
        with self._locks.domain_lock(domain, RELEASE_SCOPE, operation="swap"):
            with self._record(domain):
                site = self.get(domain)
                if release_id is not None and self.get_release(site.domain, release_id) is None:
                    raise NotFoundError(f"Release '{release_id}' not found for '{domain}'.")
                updated = site.evolve(current_release_id=release_id, updated_at=now_iso())
                self._state.write_site(site.domain, updated.to_dict())
                return updated

    def deprovision(self, domain: str) -> None:
        """Remove the site record and its port reservation."""
        with self._locks.global_lock(timeout=_RECORD_LOCK_TIMEOUT, operation="deprovision"):
            site = self.get(domain)
            if site.port is not None and self._ports.get_port(site.domain) is not None:
                self._ports.release(site.domain)
            self._state.delete_site(site.domain)

    # Releases ---------------------------------------------------------
    def releases_for(self, domain: str) -> list[Release]:
        """Return the releases recorded for *domain* in creation order."""
        return [Release.from_mapping(entry) for entry in self._state.read_releases(domain)]

    def get_release(self, domain: str, release_id: str) -> Release | None:
        """Return the release *release_id* of *domain*, if recorded."""
        for release in self.releases_for(domain):
            if release.id == release_id:
                return release
        return None

    def find_release_by_digest(self, domain: str, digest: str) -> Release | None:
        """Return the release of *domain* built from *digest*, if any."""
        for release in self.releases_for(domain):
            if release.artifact_digest == digest:
                return release
        return None

    def active_release(self, domain: str) -> Release | None:
        """Return the single active release of *domain*, if any."""
        for release in self.releases_for(domain):
            if release.status is ReleaseStatus.ACTIVE:
                return release
        return None

    def next_release_sequence(self, domain: str) -> int:
        """Return the next monotonic release sequence number for *domain*."""
        return len(self.releases_for(domain)) + 1

    def add_release(self, release: Release) -> Release:
        """Append *release* to the site's release ledger."""
        with self._record(release.site_domain):
            entries = self._state.read_releases(release.site_domain)
            if any(entry.get("id") == release.id for entry in entries):
                raise ConflictError(f"Release '{release.id}' already recorded.")
            entries.append(release.to_dict())
            self._state.write_releases(release.site_domain, entries)
        return release

    def update_releases(self, domain: str, *releases: Release) -> None:
        """Persist new versions of *releases* in a single write.

        Activating one release and demoting another must land together so no
        observer ever sees two active releases.
        """
        with self._record(domain):
            entries = self._state.read_releases(domain)
            replacements = {release.id: release for release in releases}
            updated = []
            for entry in entries:
                replacement = replacements.pop(str(entry.get("id")), None)
                updated.append(replacement.to_dict() if replacement else entry)
            if replacements:
                missing = ", ".join(sorted(replacements))
                raise NotFoundError(f"Releases not found for '{domain}': {missing}.")
            active = [entry for entry in updated if entry.get("status") == "active"]
            if len(active) > 1:
                raise ConflictError(
                    f"Refusing to record more than one active release for '{domain}'."
                )
            self._state.write_releases(domain, updated)

    # Migration ledger -------------------------------------------------
    def append_migration(self, record: MigrationRecord) -> None:
        """Append *record* to the site's migration ledger."""
        with self._record(record.site_domain):
            self._state.append_migration(record.site_domain, record.to_dict())

    def migrations_for(self, domain: str) -> list[MigrationRecord]:
        """Return the migration ledger of *domain* in append order."""
        return [
            MigrationRecord.from_mapping(entry) for entry in self._state.read_migrations(domain)
        ]

    # ------------------------------------------------------------------
    @contextmanager
    def _record(self, domain: str) -> Iterator[None]:
        with self._locks.domain_lock(domain, RECORD_SCOPE, timeout=_RECORD_LOCK_TIMEOUT):
            yield


__all__ = ["SiteRegistry", "SiteSpec", "validate_domain"]
