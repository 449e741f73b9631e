"""Database backups: dump, restore, retention and the JSON backup index."""
from __future__ import annotations

import json
import logging
import os
import secrets
import tempfile
from collections.abc import Callable, Iterable, Iterator, Mapping
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from pathlib import Path

from .archive import compute_checksum, write_checksum_file
from .confirm import require_confirmation
from .errors import NotFoundError, PreconditionError
from .locking import LEDGER_SCOPE, LockManager
from .migrations import applied_versions
from .models import MigrationMode, MigrationRecord, Site, now_iso, parse_iso
from .providers.postgres import PostgresError, PostgresProvider
from .state.sites import SiteRegistry

logger = logging.getLogger("releasectl.backups")

_INDEX_LOCK_TIMEOUT = 10.0


class BackupError(RuntimeError):
    """Raised when backup operations fail."""


class BackupRegistryError(BackupError):
    """Raised when backup index interactions fail."""


def _normalise_identifier(value: str, *, label: str) -> str:
    normalised = value.strip()
    if not normalised:
        raise BackupRegistryError(f"{label} must be a non-empty string.")
    return normalised


@dataclass(slots=True, frozen=True)
class BackupRecord:
    """A database dump registered in the backup index."""

    id: str
    site: str
    created_at: str
    size: int
    storage_path: str
    retention_expiry: str
    checksum: str
    schema_version: int = 0
    status: str = "available"
    message: str | None = None
    labels: tuple[str, ...] = field(default_factory=tuple)

    def to_dict(self) -> dict[str, object]:
        """Return the JSON-serialisable index entry."""
        entry: dict[str, object] = {
            "id": self.id,
            "site": self.site,
            "created_at": self.created_at,
            "size": self.size,
            "storage_path": self.storage_path,
            "retention_expiry": self.retention_expiry,
            "checksum": {"algorithm": "sha256", "value": self.checksum},
            "schema_version": self.schema_version,
            "status": self.status,
            "labels": list(self.labels),
        }
        if self.message:
            entry["message"] = self.message
        return entry

    @classmethod
    def from_mapping(cls, entry: Mapping[str, object]) -> BackupRecord:
        """Build a record from an index entry."""
        checksum = entry.get("checksum")
        if isinstance(checksum, Mapping):
            checksum_value = str(checksum.get("value", ""))
        else:
            checksum_value = str(checksum or "")
        labels = entry.get("labels")
        message = entry.get("message")
        return cls(
            id=str(entry["id"]),
            site=str(entry.get("site", "")),
            created_at=str(entry.get("created_at", "")),
            size=int(str(entry.get("size", 0))),
            storage_path=str(entry.get("storage_path", "")),
            retention_expiry=str(entry.get("retention_expiry", "")),
            checksum=checksum_value,
            schema_version=int(str(entry.get("schema_version", 0))),
            status=str(entry.get("status", "available")),
            message=str(message) if message else None,
            labels=tuple(str(item) for item in labels) if isinstance(labels, list) else (),
        )

    def expired(self, now: datetime) -> bool:
        """Return True once the retention window has passed."""
        expiry = parse_iso(self.retention_expiry)
        return expiry is not None and expiry <= now


@dataclass(slots=True)
class BackupsRegistry:
    """Manage the JSON backup index under the backups directory."""

    root: Path
    index: Path

    def __post_init__(self) -> None:
        """Normalise root/index paths after initialisation."""
        self.root = self.root.expanduser()
        self.index = self.index.expanduser()

    # Basic helpers -------------------------------------------------
    def ensure_root(self) -> None:
        """Ensure the backup root directory exists with safe permissions."""
        try:
            self.root.mkdir(parents=True, exist_ok=True)
            os.chmod(self.root, 0o750)
        except OSError as exc:  # pragma: no cover - permissions env-specific
            raise BackupRegistryError(f"Failed to prepare backup root {self.root}: {exc}") from exc

    def read(self) -> dict[str, object]:
        """Return the parsed backups index (empty structure when missing)."""
        if not self.index.exists():
            return {"backups": []}
        try:
            data = json.loads(self.index.read_text(encoding="utf-8"))
        except FileNotFoundError:
            return {"backups": []}
        except json.JSONDecodeError as exc:
            raise BackupRegistryError(f"Backup index corrupted ({self.index}): {exc}") from exc
        if not isinstance(data, Mapping):
            raise BackupRegistryError(f"Backup index must be a JSON object ({self.index}).")
        return dict(data)

    def write(self, payload: Mapping[str, object]) -> None:
        """Atomically persist *payload* to the backups index."""
        self.ensure_root()
        self.index.parent.mkdir(parents=True, exist_ok=True)
        tmp_fd, tmp_name = tempfile.mkstemp(
            dir=str(self.index.parent),
            prefix=f".{self.index.name}.",
        )
        tmp_path = Path(tmp_name)
        try:
            with os.fdopen(tmp_fd, "w", encoding="utf-8") as handle:
                json.dump(payload, handle, indent=2, sort_keys=False)
                handle.write("\n")
            os.replace(tmp_path, self.index)
            os.chmod(self.index, 0o640)
        except OSError as exc:
            raise BackupRegistryError(f"Failed to write backup index: {exc}") from exc
        finally:
            tmp_path.unlink(missing_ok=True)

    def append(self, entry: Mapping[str, object]) -> None:
        """Append *entry* to the backups index."""
        entries = self.list_entries()
        entries.append(dict(entry))
        self.write({"backups": entries})

    def list_entries(self) -> list[dict[str, object]]:
        """Return a list of backup entries."""
        backups = self.read().get("backups", [])
        entries: list[dict[str, object]] = []
        if isinstance(backups, list):
            for item in backups:
                if isinstance(item, Mapping):
                    entries.append(dict(item))
        return entries

    def find_by_id(self, backup_id: str) -> dict[str, object] | None:
        """Return the entry for *backup_id* if present."""
        normalized = _normalise_identifier(backup_id, label="Backup identifier")
        for entry in self.list_entries():
            if str(entry.get("id", "")).strip() == normalized:
                return entry
        return None

    def entries_for_site(self, site: str) -> list[dict[str, object]]:
        """Return entries associated with *site*."""
        normalized = _normalise_identifier(site, label="Site domain")
        return [
            entry
            for entry in self.list_entries()
            if str(entry.get("site", "")).strip() == normalized
        ]

    def update_entry(
        self,
        backup_id: str,
        mutator: Callable[[dict[str, object]], None],
    ) -> dict[str, object]:
        """Apply *mutator* to the entry for *backup_id* and persist changes."""
        normalized = _normalise_identifier(backup_id, label="Backup identifier")
        entries = self.list_entries()
        updated_entry: dict[str, object] | None = None
        for index, entry in enumerate(entries):
            if str(entry.get("id", "")).strip() == normalized:
                mutable = dict(entry)
                mutator(mutable)
                entries[index] = mutable
                updated_entry = mutable
                break
        if updated_entry is None:
            raise BackupRegistryError(f"Backup '{normalized}' not found in index.")
        self.write({"backups": entries})
        return updated_entry

    def remove_entries(self, backup_ids: Iterable[str]) -> None:
        """Drop the entries named in *backup_ids* from the index."""
        doomed = {identifier.strip() for identifier in backup_ids}
        entries = [
            entry for entry in self.list_entries() if str(entry.get("id", "")).strip() not in doomed
        ]
        self.write({"backups": entries})

    # Utility helpers -----------------------------------------------
    def generate_identifier(self, site: str) -> str:
        """Return a unique backup identifier for *site*."""
        timestamp = datetime.now(tz=UTC).strftime("%Y%m%d-%H%M%S")
        token = secrets.token_hex(3)
        safe_site = "".join(
            char if char.isalnum() or char in {"-", "_"} else "-" for char in site
        )
        return f"{timestamp}-{safe_site}-{token}"

    def archive_directory(self, site: str) -> Path:
        """Return the directory that should contain dumps for *site*."""
        return self.root / site


class BackupManager:
    """Take, restore and prune database backups for sites.

    Backups and restores run under the site's ``ledger`` lock, the same lock
    the migration runner holds, so a restore can never interleave with a
    migration or destructive reset of the same database.
    """

    def __init__(
        self,
        *,
        registry: BackupsRegistry,
        sites: SiteRegistry,
        locks: LockManager,
        postgres: PostgresProvider,
        retention_days: int = 14,
    ) -> None:
        """Wire the manager to the index, the site registry and the database tools."""
        self._registry = registry
        self._sites = sites
        self._locks = locks
        self._postgres = postgres
        self._retention = timedelta(days=retention_days)

    # ------------------------------------------------------------------
    def backup(
        self,
        domain: str,
        *,
        message: str | None = None,
        labels: Iterable[str] | None = None,
    ) -> BackupRecord:
        """Dump the site's database and register the result.

        Returns only after the dump is on disk, checksummed and indexed.
        """
        with self._locks.domain_lock(domain, LEDGER_SCOPE, operation="backup.run"):
            site = self._sites.get(domain)
            database_url = _require_database(site)
            backup_id = self._registry.generate_identifier(site.domain)
            destination = self._registry.archive_directory(site.domain) / f"{backup_id}.dump"
            self._registry.ensure_root()

            try:
                self._postgres.dump(database_url, destination)
            except PostgresError as exc:
                destination.unlink(missing_ok=True)
                raise BackupError(f"Backup of {site.domain} failed: {exc}") from exc
            if not destination.exists() or destination.stat().st_size == 0:
                destination.unlink(missing_ok=True)
                raise BackupError(f"Backup of {site.domain} produced no data.")

            os.chmod(destination, 0o640)
            checksum = compute_checksum(destination)
            write_checksum_file(destination, checksum)
            created = datetime.now(tz=UTC)
            schema = applied_versions(self._sites.migrations_for(site.domain))
            record = BackupRecord(
                id=backup_id,
                site=site.domain,
                created_at=_iso(created),
                size=destination.stat().st_size,
                storage_path=str(destination),
                retention_expiry=_iso(created + self._retention),
                checksum=checksum,
                schema_version=max(schema, default=0),
                message=message,
                labels=tuple(labels or ()),
            )
            with self._index():
                self._registry.append(record.to_dict())
            logger.info("Backup %s of %s written to %s", record.id, site.domain, destination)
            return record

    def verify(self, record: BackupRecord) -> bool:
        """Return True when the dump exists and matches its recorded checksum."""
        path = Path(record.storage_path)
        if not path.is_file() or not record.checksum:
            return False
        return compute_checksum(path) == record.checksum

    def restore(self, domain: str, backup_id: str, confirmation: str | None) -> BackupRecord:
        """Restore *backup_id* over the site's database.

        Requires the current confirmation token. The restored schema version
        is appended to the migration ledger as a ``restore`` entry.
        """
        with self._locks.domain_lock(domain, LEDGER_SCOPE, operation="backup.restore"):
            site = self._sites.get(domain)
            database_url = _require_database(site)
            record = self.get(backup_id)
            if record.site != site.domain:
                raise PreconditionError(
                    f"Backup {record.id} belongs to {record.site}, not {site.domain}."
                )
            require_confirmation(
                confirmation,
                action="restore",
                domain=site.domain,
                target=record.id,
                ledger_length=len(self._sites.migrations_for(site.domain)),
            )
            if record.status == "restoring":
                logger.warning(
                    "Backup %s was left restoring by an interrupted run; resetting", record.id
                )
            elif record.status != "available":
                raise PreconditionError(f"Backup {record.id} is {record.status}.")

            self._set_status(record.id, "restoring")
            try:
                if not self.verify(record):
                    raise BackupError(
                        f"Backup {record.id} is missing or failed checksum verification."
                    )
                try:
                    self._postgres.restore(database_url, Path(record.storage_path))
                except PostgresError as exc:
                    raise BackupError(f"Restore of {record.id} failed: {exc}") from exc
                self._sites.append_migration(
                    MigrationRecord(
                        site_domain=site.domain,
                        applied_version=record.schema_version,
                        mode=MigrationMode.RESTORE,
                        backup_id=record.id,
                    )
                )
            finally:
                self._set_status(record.id, "available")
            logger.info("Restored %s from backup %s", site.domain, record.id)
            return record

    def prune(self, now: datetime | None = None) -> list[BackupRecord]:
        """Delete backups past their retention expiry.

        Backups of a site whose ledger is locked by a running backup or
        restore are kept regardless of expiry.
        """
        now = now or datetime.now(tz=UTC)
        removed: list[BackupRecord] = []
        busy: dict[str, bool] = {}
        with self._index():
            for record in self.list_backups():
                if not record.expired(now):
                    continue
                if record.site not in busy:
                    busy[record.site] = self._locks.is_locked(record.site, LEDGER_SCOPE)
                if busy[record.site]:
                    logger.info("Keeping backup %s; %s is in use", record.id, record.site)
                    continue
                path = Path(record.storage_path)
                path.unlink(missing_ok=True)
                path.with_name(f"{path.name}.sha256").unlink(missing_ok=True)
                removed.append(record)
            if removed:
                self._registry.remove_entries(record.id for record in removed)
        for record in removed:
            logger.info("Pruned backup %s of %s", record.id, record.site)
        return removed

    def list_backups(self, site: str | None = None) -> list[BackupRecord]:
        """Return backup records, optionally filtered by site."""
        entries = (
            self._registry.entries_for_site(site) if site else self._registry.list_entries()
        )
        return [BackupRecord.from_mapping(entry) for entry in entries if entry.get("id")]

    def get(self, backup_id: str) -> BackupRecord:
        """Return the record for *backup_id* or raise :class:`NotFoundError`."""
        entry = self._registry.find_by_id(backup_id)
        if entry is None:
            raise NotFoundError(f"Backup '{backup_id}' not found.")
        return BackupRecord.from_mapping(entry)

    # ------------------------------------------------------------------
    @contextmanager
    def _index(self) -> Iterator[None]:
        with self._locks.global_lock(timeout=_INDEX_LOCK_TIMEOUT, operation="backup.index"):
            yield

    def _set_status(self, backup_id: str, status: str) -> None:
        def mutate(entry: dict[str, object]) -> None:
            entry["status"] = status
            entry["status_changed_at"] = now_iso()

        with self._index():
            self._registry.update_entry(backup_id, mutate)


def _require_database(site: Site) -> str:
    if not site.database_url:
        raise PreconditionError(f"Site '{site.domain}' has no database_url configured.")
    return site.database_url


def _iso(moment: datetime) -> str:
    return moment.isoformat(timespec="seconds").replace("+00:00", "Z")


__all__ = [
    "BackupError",
    "BackupManager",
    "BackupRecord",
    "BackupRegistryError",
    "BackupsRegistry",
]
