"""PostgreSQL access through the standard client tools.

No connection is held between calls: every operation spawns ``psql``,
``pg_dump`` or ``pg_restore`` with the site's connection string.
"""
from __future__ import annotations

import re
import subprocess
from collections.abc import Sequence
from dataclasses import dataclass
from pathlib import Path

_IDENTIFIER = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")


class PostgresError(RuntimeError):
    """Raised when a PostgreSQL client tool fails."""


@dataclass(slots=True)
class PostgresProvider:
    """Run scripts, dumps and restores against a database URL."""

    psql_bin: str = "psql"
    pg_dump_bin: str = "pg_dump"
    pg_restore_bin: str = "pg_restore"
    schema: str = "public"

    def __post_init__(self) -> None:
        """Validate the schema name, which is interpolated into SQL."""
        if not _IDENTIFIER.match(self.schema):
            raise PostgresError(f"Invalid schema name {self.schema!r}.")

    def run_script(self, database_url: str, script: Path) -> subprocess.CompletedProcess[str]:
        """Execute *script* as a single transaction, stopping on the first error."""
        return self._run(
            [
                self.psql_bin,
                "--no-psqlrc",
                "--single-transaction",
                "-v",
                "ON_ERROR_STOP=1",
                "--dbname",
                database_url,
                "--file",
                str(script),
            ]
        )

    def reset_schema(self, database_url: str) -> subprocess.CompletedProcess[str]:
        """Drop and recreate the configured schema in one transaction."""
        statement = f"DROP SCHEMA IF EXISTS {self.schema} CASCADE; CREATE SCHEMA {self.schema};"
        return self._run(
            [
                self.psql_bin,
                "--no-psqlrc",
                "--single-transaction",
                "-v",
                "ON_ERROR_STOP=1",
                "--dbname",
                database_url,
                "--command",
                statement,
            ]
        )

    def dump(self, database_url: str, destination: Path) -> subprocess.CompletedProcess[str]:
        """Write a custom-format dump of the database to *destination*."""
        destination.parent.mkdir(parents=True, exist_ok=True)
        return self._run(
            [
                self.pg_dump_bin,
                "--format=custom",
                "--no-owner",
                "--dbname",
                database_url,
                "--file",
                str(destination),
            ]
        )

    def restore(self, database_url: str, source: Path) -> subprocess.CompletedProcess[str]:
        """Restore a custom-format dump over the current database contents."""
        return self._run(
            [
                self.pg_restore_bin,
                "--clean",
                "--if-exists",
                "--no-owner",
                "--single-transaction",
                "--exit-on-error",
                "--dbname",
                database_url,
                str(source),
            ]
        )

    # ------------------------------------------------------------------
    def _run(self, args: Sequence[str]) -> subprocess.CompletedProcess[str]:
        try:
            result = subprocess.run(  # noqa: S603, S607
                list(args),
                capture_output=True,
                text=True,
                check=False,
            )
        except FileNotFoundError as exc:
            raise PostgresError(f"{args[0]} not found: {exc}") from exc
        if result.returncode != 0:
            message = (result.stderr or result.stdout or "no output").strip()
            raise PostgresError(f"{args[0]} failed (exit {result.returncode}): {message}")
        return result


__all__ = ["PostgresError", "PostgresProvider"]
