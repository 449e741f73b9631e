"""Tests for migration discovery, the ledger fold and the migration runner."""
from __future__ import annotations

from pathlib import Path
from typing import TYPE_CHECKING

import pytest

from releasectl.errors import (
    BackupFailedError,
    ConfirmationRequiredError,
    MigrationFailedError,
    PreconditionError,
    ProviderError,
)
from releasectl.migrations import applied_versions, discover_migrations
from releasectl.models import MigrationMode, MigrationRecord, SiteKind
from releasectl.state.sites import SiteSpec

if TYPE_CHECKING:
    from conftest import Harness

DOMAIN = "api.example.com"


def _write_migrations(directory: Path, *names: str, with_down: bool = True) -> Path:
    directory.mkdir(parents=True, exist_ok=True)
    for name in names:
        (directory / f"{name}.up.sql").write_text(f"-- up {name}\n", encoding="utf-8")
        if with_down:
            (directory / f"{name}.down.sql").write_text(f"-- down {name}\n", encoding="utf-8")
    return directory


@pytest.fixture
def source(tmp_path: Path) -> Path:
    """Return a directory holding three migrations."""
    return _write_migrations(tmp_path / "migrations", "0001_init", "0002_users", "0003_index")


@pytest.fixture
def site(harness: Harness) -> str:
    """Declare a process site with a database."""
    harness.orchestrator.sites.declare(
        SiteSpec(domain=DOMAIN, kind=SiteKind.PROCESS, database_url="postgresql://localhost/app")
    )
    return DOMAIN


def _record(version: int, mode: MigrationMode) -> MigrationRecord:
    return MigrationRecord(site_domain=DOMAIN, applied_version=version, mode=mode)


# Discovery --------------------------------------------------------------
def test_discover_sorts_and_pairs_scripts(tmp_path: Path) -> None:
    """Scripts are ordered by version and paired with their down scripts."""
    directory = _write_migrations(tmp_path / "m", "0002_users", "0010_late", "0001_init")
    (directory / "0010_late.down.sql").unlink()
    (directory / "README.md").write_text("notes", encoding="utf-8")

    scripts = discover_migrations(directory)

    assert [script.version for script in scripts] == [1, 2, 10]
    assert scripts[0].name == "init"
    assert scripts[0].down is not None
    assert scripts[2].down is None


def test_discover_missing_directory_is_empty(tmp_path: Path) -> None:
    """A release without migrations has nothing to apply."""
    assert discover_migrations(tmp_path / "absent") == []
    assert discover_migrations(None) == []


def test_discover_rejects_duplicate_versions(tmp_path: Path) -> None:
    """Two up scripts for one version are ambiguous."""
    directory = _write_migrations(tmp_path / "m", "0001_init", "0001_other")

    with pytest.raises(PreconditionError, match="Duplicate migration version 0001"):
        discover_migrations(directory)


# Ledger fold ------------------------------------------------------------
def test_fold_incremental_and_revert() -> None:
    """Reverts remove versions added by incremental entries."""
    ledger = [
        _record(1, MigrationMode.INCREMENTAL),
        _record(2, MigrationMode.INCREMENTAL),
        _record(3, MigrationMode.INCREMENTAL),
        _record(3, MigrationMode.REVERT),
    ]
    assert applied_versions(ledger) == {1, 2}


def test_fold_destructive_reset_clears_history() -> None:
    """A reset starts the applied set from scratch."""
    ledger = [
        _record(1, MigrationMode.INCREMENTAL),
        _record(2, MigrationMode.INCREMENTAL),
        _record(0, MigrationMode.DESTRUCTIVE_RESET),
        _record(1, MigrationMode.INCREMENTAL),
    ]
    assert applied_versions(ledger) == {1}


def test_fold_restore_rewinds_to_backup_version() -> None:
    """A restore brings back every version up to the restored one."""
    ledger = [
        _record(1, MigrationMode.INCREMENTAL),
        _record(2, MigrationMode.INCREMENTAL),
        _record(3, MigrationMode.INCREMENTAL),
        _record(2, MigrationMode.RESTORE),
    ]
    assert applied_versions(ledger) == {1, 2}
    assert applied_versions([]) == set()


# Incremental apply ------------------------------------------------------
def test_apply_runs_pending_in_order_and_is_idempotent(
    harness: Harness, site: str, source: Path
) -> None:
    """Outstanding migrations run ascending; a second run changes nothing."""
    runner = harness.orchestrator.migrations

    records = runner.apply_incremental(site, source=source)

    assert [record.applied_version for record in records] == [1, 2, 3]
    assert harness.postgres.events == [
        ("run", "0001_init.up.sql"),
        ("run", "0002_users.up.sql"),
        ("run", "0003_index.up.sql"),
    ]

    assert runner.apply_incremental(site, source=source) == []
    assert len(harness.postgres.events) == 3
    assert len(harness.orchestrator.sites.migrations_for(site)) == 3


def test_apply_stops_at_first_failure(harness: Harness, site: str, source: Path) -> None:
    """Earlier migrations stay applied; later ones are not attempted."""
    harness.postgres.failing_scripts.add("0002_users.up.sql")
    runner = harness.orchestrator.migrations

    with pytest.raises(MigrationFailedError) as excinfo:
        runner.apply_incremental(site, source=source)

    assert excinfo.value.version == 2
    assert ("run", "0003_index.up.sql") not in harness.postgres.events
    assert applied_versions(harness.orchestrator.sites.migrations_for(site)) == {1}

    harness.postgres.failing_scripts.clear()
    resumed = runner.apply_incremental(site, source=source)
    assert [record.applied_version for record in resumed] == [2, 3]


def test_apply_without_database_fails_only_when_needed(harness: Harness, source: Path) -> None:
    """Sites without a database may apply nothing, but not something."""
    harness.orchestrator.sites.declare(SiteSpec(domain=DOMAIN, kind=SiteKind.PROCESS))
    runner = harness.orchestrator.migrations

    assert runner.apply_incremental(DOMAIN, source=source.parent / "empty") == []
    with pytest.raises(PreconditionError, match="database_url"):
        runner.apply_incremental(DOMAIN, source=source)


# Destructive reset ------------------------------------------------------
def test_reset_requires_confirmation(harness: Harness, site: str, source: Path) -> None:
    """No token, no drop."""
    runner = harness.orchestrator.migrations

    with pytest.raises(ConfirmationRequiredError) as excinfo:
        runner.destructive_reset(site, None, source=source)

    assert excinfo.value.expected == runner.confirmation_token(site, "reset")
    assert harness.postgres.events == []


def test_reset_backs_up_before_dropping(harness: Harness, site: str, source: Path) -> None:
    """The verified backup precedes the drop, and every migration re-runs."""
    runner = harness.orchestrator.migrations
    runner.apply_incremental(site, source=source)
    harness.postgres.events.clear()

    result = runner.destructive_reset(
        site, runner.confirmation_token(site, "reset"), source=source
    )

    kinds = [event[0] for event in harness.postgres.events]
    assert kinds == ["dump", "reset", "run", "run", "run"]
    assert result.backup.labels == ("pre-reset",)
    assert result.backup.schema_version == 3
    assert [record.applied_version for record in result.applied] == [1, 2, 3]

    ledger = harness.orchestrator.sites.migrations_for(site)
    reset_entry = ledger[3]
    assert reset_entry.mode is MigrationMode.DESTRUCTIVE_RESET
    assert reset_entry.backup_id == result.backup.id
    assert applied_versions(ledger) == {1, 2, 3}


def test_reset_token_cannot_be_replayed(harness: Harness, site: str, source: Path) -> None:
    """The ledger grows with every reset, so the old token goes stale."""
    runner = harness.orchestrator.migrations
    token = runner.confirmation_token(site, "reset")
    runner.destructive_reset(site, token, source=source)

    with pytest.raises(ConfirmationRequiredError, match="stale"):
        runner.destructive_reset(site, token, source=source)


def test_reset_backup_failure_leaves_schema_untouched(
    harness: Harness, site: str, source: Path
) -> None:
    """A failed backup aborts before anything is dropped."""
    runner = harness.orchestrator.migrations
    runner.apply_incremental(site, source=source)
    harness.postgres.events.clear()
    harness.postgres.fail_dump = True

    with pytest.raises(BackupFailedError, match="schema left untouched"):
        runner.destructive_reset(site, runner.confirmation_token(site, "reset"), source=source)

    assert [event[0] for event in harness.postgres.events] == ["dump"]
    assert len(harness.orchestrator.sites.migrations_for(site)) == 3


def test_reset_unverifiable_backup_aborts(
    harness: Harness,
    site: str,
    source: Path,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    """A dump that fails verification counts as a failed backup."""
    runner = harness.orchestrator.migrations
    monkeypatch.setattr(type(harness.orchestrator.backups), "verify", lambda self, record: False)

    with pytest.raises(BackupFailedError, match="did not verify"):
        runner.destructive_reset(site, runner.confirmation_token(site, "reset"), source=source)

    assert "reset" not in [event[0] for event in harness.postgres.events]


def test_reset_drop_failure_names_the_backup(harness: Harness, site: str, source: Path) -> None:
    """When the drop fails the caller learns which backup is safe."""
    runner = harness.orchestrator.migrations
    harness.postgres.fail_reset = True

    with pytest.raises(ProviderError, match="is intact"):
        runner.destructive_reset(site, runner.confirmation_token(site, "reset"), source=source)

    assert harness.orchestrator.sites.migrations_for(site) == []
    assert len(harness.orchestrator.backups.list_backups(site)) == 1


# Revert -----------------------------------------------------------------
def test_revert_runs_down_scripts_newest_first(harness: Harness, site: str, source: Path) -> None:
    """Reverting two steps undoes versions 3 then 2."""
    runner = harness.orchestrator.migrations
    runner.apply_incremental(site, source=source)
    harness.postgres.events.clear()

    reverted = runner.revert(
        site, runner.confirmation_token(site, "revert", "2"), steps=2, source=source
    )

    assert [record.applied_version for record in reverted] == [3, 2]
    assert harness.postgres.events == [
        ("run", "0003_index.down.sql"),
        ("run", "0002_users.down.sql"),
    ]
    assert applied_versions(harness.orchestrator.sites.migrations_for(site)) == {1}
    assert runner.status(site, source=source)["pending"] == [2, 3]


def test_revert_missing_down_script_does_nothing(
    harness: Harness, site: str, tmp_path: Path
) -> None:
    """Every targeted version needs a down script before anything runs."""
    source = _write_migrations(tmp_path / "nodown", "0001_init", with_down=False)
    runner = harness.orchestrator.migrations
    runner.apply_incremental(site, source=source)
    harness.postgres.events.clear()

    with pytest.raises(PreconditionError, match="no down script"):
        runner.revert(site, runner.confirmation_token(site, "revert"), source=source)

    assert harness.postgres.events == []


def test_revert_requires_confirmation_and_positive_steps(
    harness: Harness, site: str, source: Path
) -> None:
    """Reverts are destructive and need a token."""
    runner = harness.orchestrator.migrations
    runner.apply_incremental(site, source=source)

    with pytest.raises(PreconditionError, match="at least 1"):
        runner.revert(site, None, steps=0, source=source)
    with pytest.raises(ConfirmationRequiredError):
        runner.revert(site, None, source=source)


def test_status_reports_ledger(harness: Harness, site: str, source: Path) -> None:
    """Status summarises applied, pending and available versions."""
    runner = harness.orchestrator.migrations
    harness.postgres.failing_scripts.add("0003_index.up.sql")
    with pytest.raises(MigrationFailedError):
        runner.apply_incremental(site, source=source)

    status = runner.status(site, source=source)

    assert status["applied"] == [1, 2]
    assert status["pending"] == [3]
    assert status["available"] == [1, 2, 3]
    assert status["ledger_entries"] == 2
    last = status["last_entry"]
    assert isinstance(last, dict)
    assert last["applied_version"] == 2
