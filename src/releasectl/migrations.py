"""Schema migrations: incremental apply, destructive reset and revert.

Migration scripts live in a release's ``migrations/`` directory and follow
``NNNN_name.up.sql`` / ``NNNN_name.down.sql``. Each script runs as a single
transaction through ``psql``. The per-site ledger is append-only; the set of
applied versions is derived by folding it (see :func:`applied_versions`).
"""
from __future__ import annotations

import logging
import re
from collections.abc import Iterable, Sequence
from dataclasses import dataclass, field
from pathlib import Path
from typing import TYPE_CHECKING

from .confirm import confirmation_token, require_confirmation
from .errors import BackupFailedError, MigrationFailedError, PreconditionError, ProviderError
from .locking import LEDGER_SCOPE, LockManager
from .models import MigrationMode, MigrationRecord, Site
from .providers.postgres import PostgresError, PostgresProvider
from .state.sites import SiteRegistry

if TYPE_CHECKING:
    from .backups import BackupManager, BackupRecord

logger = logging.getLogger("releasectl.migrations")

_SCRIPT_PATTERN = re.compile(
    r"^(?P<version>\d{4,})_(?P<name>[A-Za-z0-9_\-]+)\.(?P<direction>up|down)\.sql$"
)


@dataclass(frozen=True, slots=True)
class MigrationScript:
    """A versioned migration with its up script and optional down script."""

    version: int
    name: str
    up: Path
    down: Path | None = None


@dataclass(slots=True)
class ResetResult:
    """Outcome of a destructive reset."""

    backup: BackupRecord
    applied: list[MigrationRecord] = field(default_factory=list)


def discover_migrations(directory: Path | None) -> list[MigrationScript]:
    """Return the migrations found in *directory*, sorted by version."""
    if directory is None or not directory.is_dir():
        return []
    ups: dict[int, tuple[str, Path]] = {}
    downs: dict[int, Path] = {}
    for path in sorted(directory.iterdir()):
        match = _SCRIPT_PATTERN.match(path.name)
        if match is None or not path.is_file():
            continue
        version = int(match.group("version"))
        if match.group("direction") == "up":
            if version in ups:
                raise PreconditionError(
                    f"Duplicate migration version {version:04d} in {directory}."
                )
            ups[version] = (match.group("name"), path)
        else:
            downs[version] = path
    return [
        MigrationScript(version=version, name=name, up=up, down=downs.get(version))
        for version, (name, up) in sorted(ups.items())
    ]


def applied_versions(records: Iterable[MigrationRecord]) -> set[int]:
    """Fold the ledger into the set of versions currently applied.

    ``incremental`` adds its version, ``revert`` removes it,
    ``destructive_reset`` clears everything and ``restore`` rewinds to the
    previously seen versions up to and including the restored one.
    """
    applied: set[int] = set()
    seen: set[int] = set()
    for record in records:
        if record.mode is MigrationMode.INCREMENTAL:
            applied.add(record.applied_version)
            seen.add(record.applied_version)
        elif record.mode is MigrationMode.REVERT:
            applied.discard(record.applied_version)
        elif record.mode is MigrationMode.DESTRUCTIVE_RESET:
            applied.clear()
        elif record.mode is MigrationMode.RESTORE:
            applied = {version for version in seen if version <= record.applied_version}
    return applied


class MigrationRunner:
    """Apply and revert migrations for a site under its ledger lock."""

    def __init__(
        self,
        *,
        sites: SiteRegistry,
        locks: LockManager,
        postgres: PostgresProvider,
        backups: BackupManager,
    ) -> None:
        """Wire the runner to the registry, database tools and backup manager."""
        self._sites = sites
        self._locks = locks
        self._postgres = postgres
        self._backups = backups

    # ------------------------------------------------------------------
    def migrations_dir(self, site: Site) -> Path | None:
        """Return the migrations directory of the site's current release."""
        if site.current_release_id is None:
            return None
        release = self._sites.get_release(site.domain, site.current_release_id)
        if release is None or release.path is None:
            return None
        return Path(release.path) / "migrations"

    def pending(self, site: Site, source: Path | None = None) -> list[MigrationScript]:
        """Return the migrations from *source* not yet applied to *site*."""
        scripts = discover_migrations(source if source is not None else self.migrations_dir(site))
        applied = applied_versions(self._sites.migrations_for(site.domain))
        return [script for script in scripts if script.version not in applied]

    def apply_incremental(self, domain: str, source: Path | None = None) -> list[MigrationRecord]:
        """Apply outstanding migrations in ascending order.

        Stops at the first failure with :class:`MigrationFailedError`; the
        migrations applied before it stay applied and recorded. Running it
        again with nothing outstanding changes nothing.
        """
        with self._locks.domain_lock(domain, LEDGER_SCOPE, operation="migrate.apply"):
            site = self._sites.get(domain)
            return self._apply(site, self.pending(site, source))

    def destructive_reset(
        self,
        domain: str,
        confirmation: str | None,
        source: Path | None = None,
    ) -> ResetResult:
        """Back up, drop and recreate the schema, then re-apply every migration.

        The drop only happens after a backup of this site has been written
        and verified in the same operation; a backup failure raises
        :class:`BackupFailedError` with the schema untouched.
        """
        with self._locks.domain_lock(domain, LEDGER_SCOPE, operation="migrate.reset"):
            site = self._sites.get(domain)
            require_confirmation(
                confirmation,
                action="reset",
                domain=site.domain,
                target=self._postgres.schema,
                ledger_length=len(self._sites.migrations_for(site.domain)),
            )
            database_url = _require_database(site)
            scripts = discover_migrations(
                source if source is not None else self.migrations_dir(site)
            )

            backup = self._verified_backup(site)
            logger.warning("Dropping schema %s of %s", self._postgres.schema, site.domain)
            try:
                self._postgres.reset_schema(database_url)
            except PostgresError as exc:
                raise ProviderError(
                    f"Schema reset of {site.domain} failed: {exc}; backup {backup.id} is intact."
                ) from exc
            self._sites.append_migration(
                MigrationRecord(
                    site_domain=site.domain,
                    applied_version=0,
                    mode=MigrationMode.DESTRUCTIVE_RESET,
                    backup_id=backup.id,
                )
            )
            return ResetResult(backup=backup, applied=self._apply(site, scripts))

    def revert(
        self,
        domain: str,
        confirmation: str | None,
        *,
        steps: int = 1,
        source: Path | None = None,
    ) -> list[MigrationRecord]:
        """Run the down scripts of the *steps* most recently applied versions."""
        if steps < 1:
            raise PreconditionError("steps must be at least 1.")
        with self._locks.domain_lock(domain, LEDGER_SCOPE, operation="migrate.revert"):
            site = self._sites.get(domain)
            require_confirmation(
                confirmation,
                action="revert",
                domain=site.domain,
                target=str(steps),
                ledger_length=len(self._sites.migrations_for(site.domain)),
            )
            database_url = _require_database(site)
            scripts = {
                script.version: script
                for script in discover_migrations(
                    source if source is not None else self.migrations_dir(site)
                )
            }
            applied = sorted(applied_versions(self._sites.migrations_for(site.domain)))
            targets = list(reversed(applied))[:steps]
            if not targets:
                raise PreconditionError(f"No applied migrations to revert for {site.domain}.")
            for version in targets:
                script = scripts.get(version)
                if script is None or script.down is None:
                    raise PreconditionError(
                        f"Migration {version:04d} of {site.domain} has no down script."
                    )

            reverted: list[MigrationRecord] = []
            for version in targets:
                script = scripts[version]
                assert script.down is not None
                try:
                    self._postgres.run_script(database_url, script.down)
                except PostgresError as exc:
                    raise MigrationFailedError(version, str(exc)) from exc
                record = MigrationRecord(
                    site_domain=site.domain,
                    applied_version=version,
                    mode=MigrationMode.REVERT,
                    name=script.name,
                )
                self._sites.append_migration(record)
                reverted.append(record)
                logger.info("Reverted migration %04d of %s", version, site.domain)
            return reverted

    def status(self, domain: str, source: Path | None = None) -> dict[str, object]:
        """Return applied, pending and available versions for the site."""
        site = self._sites.get(domain)
        ledger = self._sites.migrations_for(site.domain)
        scripts = discover_migrations(source if source is not None else self.migrations_dir(site))
        applied = applied_versions(ledger)
        return {
            "domain": site.domain,
            "applied": sorted(applied),
            "pending": [script.version for script in scripts if script.version not in applied],
            "available": [script.version for script in scripts],
            "ledger_entries": len(ledger),
            "last_entry": ledger[-1].to_dict() if ledger else None,
        }

    def confirmation_token(self, domain: str, action: str, target: str | None = None) -> str:
        """Return the token a destructive *action* currently requires."""
        site = self._sites.get(domain)
        if target is None:
            target = self._postgres.schema if action == "reset" else "1"
        return confirmation_token(
            action, site.domain, target, len(self._sites.migrations_for(site.domain))
        )

    # ------------------------------------------------------------------
    def _apply(self, site: Site, scripts: Sequence[MigrationScript]) -> list[MigrationRecord]:
        if not scripts:
            return []
        database_url = _require_database(site)
        records: list[MigrationRecord] = []
        for script in scripts:
            try:
                self._postgres.run_script(database_url, script.up)
            except PostgresError as exc:
                logger.error("Migration %04d of %s failed: %s", script.version, site.domain, exc)
                raise MigrationFailedError(script.version, str(exc)) from exc
            record = MigrationRecord(
                site_domain=site.domain,
                applied_version=script.version,
                mode=MigrationMode.INCREMENTAL,
                name=script.name,
            )
            self._sites.append_migration(record)
            records.append(record)
            logger.info(
                "Applied migration %04d (%s) to %s", script.version, script.name, site.domain
            )
        return records

    def _verified_backup(self, site: Site) -> BackupRecord:
        from .backups import BackupError

        try:
            record = self._backups.backup(site.domain, message="pre-reset", labels=["pre-reset"])
        except (BackupError, OSError) as exc:
            raise BackupFailedError(
                f"Backup before reset of {site.domain} failed; schema left untouched: {exc}"
            ) from exc
        if not self._backups.verify(record):
            raise BackupFailedError(
                f"Backup {record.id} of {site.domain} did not verify; schema left untouched."
            )
        return record


def _require_database(site: Site) -> str:
    if not site.database_url:
        raise PreconditionError(f"Site '{site.domain}' has no database_url configured.")
    return site.database_url


__all__ = [
    "MigrationRunner",
    "MigrationScript",
    "ResetResult",
    "applied_versions",
    "discover_migrations",
]
