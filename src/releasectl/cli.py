"""Typer-powered command line for ``releasectl``.

Every command runs inside :meth:`StructuredLogger.operation`, delegates to
:class:`~releasectl.orchestrator.Orchestrator` and exits with the
:class:`~releasectl.exit_codes.ExitCode` of the outcome so automation can
tell retryable failures from ones that need an operator.
"""
from __future__ import annotations

import json
import shutil
import signal
import sys
import textwrap
import threading
from collections.abc import Callable, Iterator, Mapping
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path
from types import FrameType

import typer
from rich.console import Console
from rich.table import Table

from . import __version__
from .config import AppConfig, ConfigError, load_config
from .errors import OrchestratorError
from .exit_codes import ExitCode
from .logging import OperationScope, StructuredLogger
from .models import SiteKind
from .orchestrator import CommandResult, Orchestrator

console = Console()

CONFIG_FILE_OPTION = typer.Option(
    None,
    "--config-file",
    dir_okay=False,
    help="Override the path to releasectl's YAML config file.",
)

JSON_OPTION = typer.Option(
    False,
    "--json",
    help="Emit the command result as JSON.",
)

CONFIRM_OPTION = typer.Option(
    None,
    "--confirm",
    help="Confirmation token for a destructive action (printed when missing).",
)

SOURCE_OPTION = typer.Option(
    None,
    "--source",
    file_okay=False,
    help="Read migrations from this directory instead of the current release.",
)

app = typer.Typer(
    add_completion=False,
    help=textwrap.dedent(
        """
        Release orchestrator for static frontends and backend processes.

        Provision sites, move them through certificate issuance onto the edge
        proxy, release and roll back artifacts, run schema migrations and
        manage database backups.
        """
    ).strip(),
)


@dataclass
class RuntimeContext:
    """Aggregated runtime objects shared by commands."""

    config: AppConfig
    logger: StructuredLogger
    orchestrator: Orchestrator


def _ensure_runtime(
    ctx: typer.Context,
    config_file: Path | None,
    lock_timeout_override: float | None = None,
) -> RuntimeContext:
    runtime = ctx.obj
    if isinstance(runtime, RuntimeContext):
        return runtime

    overrides: dict[str, object] = {}
    if lock_timeout_override is not None:
        overrides["lock_timeout"] = lock_timeout_override

    try:
        config = load_config(config_file=config_file, overrides=overrides)
    except ConfigError as exc:
        console.print(f"[red]{exc}[/red]")
        raise typer.Exit(code=int(ExitCode.ENVIRONMENT)) from exc

    logger = StructuredLogger(config.logs_dir)
    orchestrator = Orchestrator(config)
    ctx.call_on_close(orchestrator.close)
    runtime = RuntimeContext(config=config, logger=logger, orchestrator=orchestrator)
    ctx.obj = runtime
    return runtime


def _get_runtime(ctx: typer.Context) -> RuntimeContext:
    runtime = ctx.find_root().obj
    if isinstance(runtime, RuntimeContext):
        return runtime
    return _ensure_runtime(ctx.find_root(), None, None)


@app.callback(invoke_without_command=True)
def _root(  # noqa: D401 - Typer displays help for us, docstring optional.
    ctx: typer.Context,
    version: bool = typer.Option(
        False,
        "--version",
        "-V",
        help="Show the releasectl version and exit.",
    ),
    config_file: Path | None = CONFIG_FILE_OPTION,
    lock_timeout: float | None = typer.Option(
        None,
        "--lock-timeout",
        help="Override lock acquisition timeout in seconds.",
    ),
) -> None:
    """Entry point callback invoked for every CLI execution."""
    if version:
        console.print(f"releasectl {__version__}")
        raise typer.Exit(code=0)

    if ctx.invoked_subcommand is None:
        console.print(ctx.get_help())
        raise typer.Exit(code=0)

    _ensure_runtime(ctx, config_file, lock_timeout)


# Execution helpers -------------------------------------------------------
@contextmanager
def _cancellation() -> Iterator[threading.Event]:
    """Turn SIGINT/SIGTERM into a cancel token for polling loops."""
    cancel = threading.Event()
    if threading.current_thread() is not threading.main_thread():
        yield cancel
        return

    def _handler(signum: int, frame: FrameType | None) -> None:
        cancel.set()

    previous = {sig: signal.signal(sig, _handler) for sig in (signal.SIGINT, signal.SIGTERM)}
    try:
        yield cancel
    finally:
        for sig, handler in previous.items():
            signal.signal(sig, handler)


def _record(op: OperationScope, result: CommandResult) -> None:
    if result.ok:
        op.success(result.message, changed=int(result.changed), context=result.detail)
    else:
        op.error(
            result.message,
            errors=[result.message],
            rc=int(result.code),
            context=result.detail,
        )


def _emit(
    result: CommandResult,
    *,
    json_output: bool,
    render: Callable[[CommandResult], None] | None = None,
) -> None:
    if json_output:
        console.print_json(data=result.to_dict())
        return
    if not result.ok:
        console.print(f"[red]{result.message}[/red]")
        token = result.detail.get("confirmation")
        if token:
            console.print(f"Re-run with [bold]--confirm {token}[/bold] to proceed.")
        if result.retryable:
            console.print("[yellow]This failure is transient; the command can be retried.[/yellow]")
        return
    if render is not None:
        render(result)
        return
    style = "green" if result.changed else "cyan"
    console.print(f"[{style}]{result.message}[/{style}]")


def _execute(
    ctx: typer.Context,
    command: str,
    action: Callable[[Orchestrator, threading.Event], CommandResult],
    *,
    domain: str | None = None,
    args: Mapping[str, object] | None = None,
    json_output: bool = False,
    render: Callable[[CommandResult], None] | None = None,
) -> None:
    """Run *action* as *command*, print its result and exit with its code."""
    runtime = _get_runtime(ctx)
    target: dict[str, object] = {"kind": "site", "domain": domain} if domain else {"kind": command}
    with runtime.logger.operation(command, args=dict(args or {}), target=target) as op:
        with _cancellation() as cancel:
            try:
                result = action(runtime.orchestrator, cancel)
            except OrchestratorError as exc:
                result = CommandResult.from_error(command, domain, exc)
        op.set_lock_wait_ms(runtime.orchestrator.locks.wait_ms)
        _emit(result, json_output=json_output, render=render)
        _record(op, result)
    if not result.ok:
        raise typer.Exit(code=int(result.code))


# Renderers ---------------------------------------------------------------
def _render_sites(result: CommandResult) -> None:
    table = Table(show_header=True, header_style="bold magenta")
    table.add_column("Domain", style="bold")
    table.add_column("Kind")
    table.add_column("Port")
    table.add_column("TLS")
    table.add_column("Release")
    sites = result.detail.get("sites") or []
    if not sites:
        table.add_row("(none)", "", "", "", "")
    for entry in sites if isinstance(sites, list) else []:
        port = entry.get("port")
        table.add_row(
            str(entry.get("domain", "")),
            str(entry.get("kind", "")),
            "" if port is None else str(port),
            str(entry.get("tls_state", "")),
            str(entry.get("current_release_id") or ""),
        )
    console.print(table)


def _render_site(result: CommandResult) -> None:
    site = result.detail.get("site")
    if isinstance(site, Mapping):
        for key, value in site.items():
            console.print(f"[bold]{key}[/bold]: {value}")
    releases = result.detail.get("releases") or []
    table = Table(show_header=True, header_style="bold magenta", title="Releases")
    table.add_column("ID", style="bold")
    table.add_column("Status")
    table.add_column("Activated")
    table.add_column("Health")
    for entry in releases if isinstance(releases, list) else []:
        table.add_row(
            str(entry.get("id", "")),
            str(entry.get("status", "")),
            str(entry.get("activated_at") or ""),
            str(entry.get("health_check_result") or ""),
        )
    console.print(table)


def _render_backups(result: CommandResult) -> None:
    table = Table(show_header=True, header_style="bold magenta")
    table.add_column("ID", style="bold")
    table.add_column("Site")
    table.add_column("Created")
    table.add_column("Size")
    table.add_column("Schema")
    table.add_column("Status")
    backups = result.detail.get("backups") or []
    if not backups:
        table.add_row("(none)", "", "", "", "", "")
    for entry in backups if isinstance(backups, list) else []:
        table.add_row(
            str(entry.get("id", "")),
            str(entry.get("site", "")),
            str(entry.get("created_at", "")),
            str(entry.get("size", "")),
            str(entry.get("schema_version", "")),
            str(entry.get("status", "")),
        )
    console.print(table)


def _render_mapping(result: CommandResult) -> None:
    console.print(f"[cyan]{result.message}[/cyan]")
    for key, value in result.detail.items():
        rendered = json.dumps(value, sort_keys=True) if isinstance(value, (dict, list)) else value
        console.print(f"  [bold]{key}[/bold]: {rendered}")


# Top-level commands ------------------------------------------------------
@app.command()
def provision(
    ctx: typer.Context,
    domain: str = typer.Argument(..., help="Domain served by the site."),
    kind: SiteKind = typer.Argument(..., help="Site kind."),
    port: int | None = typer.Option(None, "--port", help="Backend port (process sites)."),
    service: str | None = typer.Option(None, "--service", help="Service name for the unit."),
    command: str | None = typer.Option(
        None, "--command", help="Backend start command (process sites)."
    ),
    database_url: str | None = typer.Option(
        None, "--database-url", help="PostgreSQL connection string for migrations and backups."
    ),
    health_path: str = typer.Option("/health", "--health-path", help="Backend health path."),
    json_output: bool = JSON_OPTION,
) -> None:
    """Declare a site and install its service unit and proxy configuration."""
    _execute(
        ctx,
        "provision",
        lambda orch, _cancel: orch.provision(
            domain,
            kind,
            port=port,
            service=service,
            command=command,
            database_url=database_url,
            health_path=health_path,
        ),
        domain=domain,
        args={"kind": kind.value, "port": port, "service": service, "health_path": health_path},
        json_output=json_output,
    )


@app.command()
def release(
    ctx: typer.Context,
    domain: str = typer.Argument(..., help="Domain to release to."),
    artifact: Path = typer.Argument(..., help="Artifact directory or tarball."),
    json_output: bool = JSON_OPTION,
) -> None:
    """Release an artifact: stage, migrate, swap, restart and health-check."""
    _execute(
        ctx,
        "release",
        lambda orch, cancel: orch.release(domain, artifact, cancel=cancel),
        domain=domain,
        args={"artifact": str(artifact)},
        json_output=json_output,
    )


@app.command()
def rollback(
    ctx: typer.Context,
    domain: str = typer.Argument(..., help="Domain to roll back."),
    json_output: bool = JSON_OPTION,
) -> None:
    """Return a site to its last known-good release."""
    _execute(
        ctx,
        "rollback",
        lambda orch, cancel: orch.rollback(domain, cancel=cancel),
        domain=domain,
        json_output=json_output,
    )


@app.command("switch-to-proxied")
def switch_to_proxied(
    ctx: typer.Context,
    domain: str = typer.Argument(..., help="Domain to move behind the edge proxy."),
    json_output: bool = JSON_OPTION,
) -> None:
    """Issue a certificate, enable HTTPS on the origin and proxy the domain."""
    _execute(
        ctx,
        "switch-to-proxied",
        lambda orch, cancel: orch.switch_to_proxied(domain, cancel=cancel),
        domain=domain,
        json_output=json_output,
    )


tls_app = typer.Typer(help="Drive certificate issuance and the edge proxy mode.")
migrate_app = typer.Typer(help="Apply, reset and revert schema migrations.")
backups_app = typer.Typer(help="Create, restore and prune database backups.")
site_app = typer.Typer(help="Inspect declared sites.")
config_app = typer.Typer(help="Inspect the effective configuration.")

app.add_typer(tls_app, name="tls")
app.add_typer(migrate_app, name="migrate")
app.add_typer(backups_app, name="backup")
app.add_typer(site_app, name="site")
app.add_typer(config_app, name="config")


# TLS ---------------------------------------------------------------------
@tls_app.command("begin")
def tls_begin(
    ctx: typer.Context,
    domain: str = typer.Argument(..., help="Domain to issue a certificate for."),
    json_output: bool = JSON_OPTION,
) -> None:
    """Request a certificate (dns_only -> issuing)."""
    _execute(
        ctx,
        "tls begin",
        lambda orch, _cancel: orch.tls_begin(domain),
        domain=domain,
        json_output=json_output,
    )


@tls_app.command("poll")
def tls_poll(
    ctx: typer.Context,
    domain: str = typer.Argument(..., help="Domain with a pending certificate."),
    json_output: bool = JSON_OPTION,
) -> None:
    """Wait for issuance to finish (issuing -> issued_verified)."""
    _execute(
        ctx,
        "tls poll",
        lambda orch, cancel: orch.tls_poll(domain, cancel=cancel),
        domain=domain,
        json_output=json_output,
    )


@tls_app.command("enable")
def tls_enable(
    ctx: typer.Context,
    domain: str = typer.Argument(..., help="Domain to proxy."),
    json_output: bool = JSON_OPTION,
) -> None:
    """Switch the edge to proxied mode (issued_verified -> proxied)."""
    _execute(
        ctx,
        "tls enable",
        lambda orch, cancel: orch.tls_enable(domain, cancel=cancel),
        domain=domain,
        json_output=json_output,
    )


@tls_app.command("force-unproxy")
def tls_force_unproxy(
    ctx: typer.Context,
    domain: str = typer.Argument(..., help="Domain to take off the edge proxy."),
    json_output: bool = JSON_OPTION,
) -> None:
    """Manual recovery: switch DNS to direct mode and reset to dns_only."""
    _execute(
        ctx,
        "tls force-unproxy",
        lambda orch, _cancel: orch.tls_force_unproxy(domain),
        domain=domain,
        json_output=json_output,
    )


@tls_app.command("status")
def tls_status(
    ctx: typer.Context,
    domain: str = typer.Argument(..., help="Domain to inspect."),
    json_output: bool = JSON_OPTION,
) -> None:
    """Show the TLS state, DNS mode and installed certificate."""
    _execute(
        ctx,
        "tls status",
        lambda orch, _cancel: orch.tls_status(domain),
        domain=domain,
        json_output=json_output,
        render=_render_mapping,
    )


# Migrations --------------------------------------------------------------
@migrate_app.command("apply")
def migrate_apply(
    ctx: typer.Context,
    domain: str = typer.Argument(..., help="Site to migrate."),
    source: Path | None = SOURCE_OPTION,
    json_output: bool = JSON_OPTION,
) -> None:
    """Apply pending migrations in version order."""
    _execute(
        ctx,
        "migrate apply",
        lambda orch, _cancel: orch.migrate_apply(domain, source=source),
        domain=domain,
        args={"source": source},
        json_output=json_output,
    )


@migrate_app.command("reset")
def migrate_reset(
    ctx: typer.Context,
    domain: str = typer.Argument(..., help="Site whose schema is rebuilt."),
    confirm: str | None = CONFIRM_OPTION,
    source: Path | None = SOURCE_OPTION,
    json_output: bool = JSON_OPTION,
) -> None:
    """Back up, drop and recreate the schema, then apply every migration."""
    _execute(
        ctx,
        "migrate reset",
        lambda orch, _cancel: orch.migrate_reset(domain, confirm, source=source),
        domain=domain,
        args={"source": source, "confirmed": confirm is not None},
        json_output=json_output,
    )


@migrate_app.command("revert")
def migrate_revert(
    ctx: typer.Context,
    domain: str = typer.Argument(..., help="Site to revert."),
    steps: int = typer.Option(1, "--steps", min=1, help="Number of migrations to revert."),
    confirm: str | None = CONFIRM_OPTION,
    source: Path | None = SOURCE_OPTION,
    json_output: bool = JSON_OPTION,
) -> None:
    """Run the down scripts of the most recent migrations."""
    _execute(
        ctx,
        "migrate revert",
        lambda orch, _cancel: orch.migrate_revert(domain, confirm, steps=steps, source=source),
        domain=domain,
        args={"steps": steps, "source": source, "confirmed": confirm is not None},
        json_output=json_output,
    )


@migrate_app.command("status")
def migrate_status(
    ctx: typer.Context,
    domain: str = typer.Argument(..., help="Site to inspect."),
    source: Path | None = SOURCE_OPTION,
    json_output: bool = JSON_OPTION,
) -> None:
    """Show applied and pending migrations."""
    _execute(
        ctx,
        "migrate status",
        lambda orch, _cancel: orch.migrate_status(domain, source=source),
        domain=domain,
        json_output=json_output,
        render=_render_mapping,
    )


# Backups -----------------------------------------------------------------
@backups_app.command("run")
def backup_run(
    ctx: typer.Context,
    domain: str | None = typer.Argument(None, help="Site to back up."),
    all_sites: bool = typer.Option(False, "--all", help="Back up every site with a database."),
    json_output: bool = JSON_OPTION,
) -> None:
    """Dump a site's database (or every site's with --all)."""
    if (domain is None) == (not all_sites):
        console.print("[red]Specify a domain or --all (not both).[/red]")
        raise typer.Exit(code=int(ExitCode.VALIDATION))
    _execute(
        ctx,
        "backup run",
        lambda orch, _cancel: orch.backup_run(None if all_sites else domain),
        domain=domain,
        args={"all": all_sites},
        json_output=json_output,
    )


@backups_app.command("restore")
def backup_restore(
    ctx: typer.Context,
    domain: str = typer.Argument(..., help="Site to restore."),
    backup_id: str = typer.Argument(..., help="Backup identifier."),
    confirm: str | None = CONFIRM_OPTION,
    json_output: bool = JSON_OPTION,
) -> None:
    """Restore a backup over the site's database."""
    _execute(
        ctx,
        "backup restore",
        lambda orch, _cancel: orch.backup_restore(domain, backup_id, confirm),
        domain=domain,
        args={"backup_id": backup_id, "confirmed": confirm is not None},
        json_output=json_output,
    )


@backups_app.command("prune")
def backup_prune(
    ctx: typer.Context,
    json_output: bool = JSON_OPTION,
) -> None:
    """Remove backups past their retention period."""
    _execute(
        ctx,
        "backup prune",
        lambda orch, _cancel: orch.backup_prune(),
        json_output=json_output,
    )


@backups_app.command("list")
def backup_list(
    ctx: typer.Context,
    domain: str | None = typer.Option(None, "--site", "-s", help="Only list this site."),
    json_output: bool = JSON_OPTION,
) -> None:
    """List recorded backups."""
    _execute(
        ctx,
        "backup list",
        lambda orch, _cancel: orch.backup_list(domain),
        domain=domain,
        json_output=json_output,
        render=_render_backups,
    )


@backups_app.command("schedule")
def backup_schedule(
    ctx: typer.Context,
    releasectl_bin: str | None = typer.Option(
        None, "--bin", help="Path of the releasectl executable used by the timer."
    ),
    enable: bool = typer.Option(True, "--enable/--no-enable", help="Enable the timer now."),
    json_output: bool = JSON_OPTION,
) -> None:
    """Install the systemd timer that backs up every site nightly."""
    runtime = _get_runtime(ctx)
    binary = releasectl_bin or shutil.which("releasectl") or sys.argv[0]
    config_file = runtime.config.config_file if runtime.config.config_file.exists() else None
    _execute(
        ctx,
        "backup schedule",
        lambda orch, _cancel: orch.backup_schedule(
            releasectl_bin=binary,
            config_file=config_file,
            enable=enable,
        ),
        args={"bin": binary, "enable": enable},
        json_output=json_output,
    )


# Sites -------------------------------------------------------------------
@site_app.command("list")
def site_list(
    ctx: typer.Context,
    json_output: bool = JSON_OPTION,
) -> None:
    """List declared sites."""
    _execute(
        ctx,
        "site list",
        lambda orch, _cancel: orch.site_list(),
        json_output=json_output,
        render=_render_sites,
    )


@site_app.command("show")
def site_show(
    ctx: typer.Context,
    domain: str = typer.Argument(..., help="Site to show."),
    json_output: bool = JSON_OPTION,
) -> None:
    """Show a site with its releases."""
    _execute(
        ctx,
        "site show",
        lambda orch, _cancel: orch.site_show(domain),
        domain=domain,
        json_output=json_output,
        render=_render_site,
    )


@site_app.command("remove")
def site_remove(
    ctx: typer.Context,
    domain: str = typer.Argument(..., help="Site to remove."),
    json_output: bool = JSON_OPTION,
) -> None:
    """Remove a site's proxy configuration and service unit and free its port."""
    _execute(
        ctx,
        "site remove",
        lambda orch, _cancel: orch.deprovision(domain),
        domain=domain,
        json_output=json_output,
    )


# Config ------------------------------------------------------------------
@config_app.command("show")
def config_show(
    ctx: typer.Context,
    json_output: bool = typer.Option(
        False,
        "--json",
        help="Emit configuration as JSON instead of a table.",
    ),
) -> None:
    """Display the effective configuration after merges."""
    runtime = _get_runtime(ctx)
    data = runtime.config.to_dict()

    with runtime.logger.operation(
        "config show",
        args={"json": json_output},
        target={"kind": "config"},
    ) as op:
        if json_output:
            console.print_json(data=data)
            op.success("Rendered configuration as JSON.", changed=0)
            return

        table = Table(show_header=True, header_style="bold magenta")
        table.add_column("Key", style="bold")
        table.add_column("Value")

        for key, value in data.items():
            if isinstance(value, dict):
                rendered = json.dumps(value, indent=2, sort_keys=True)
            else:
                rendered = str(value)
            table.add_row(key, rendered)

        console.print(table)
        op.success("Rendered configuration table.", changed=0)


def main() -> None:
    """Console script entry point."""
    app()


if __name__ == "__main__":  # pragma: no cover
    main()
