"""Top-level sequencing of the release orchestrator commands.

:class:`Orchestrator` builds every component from an :class:`AppConfig`
(collaborators can be injected for tests) and exposes one method per
command. Methods return a :class:`CommandResult`; failures surface as
:class:`~releasectl.errors.OrchestratorError` subclasses, with errors raised
by the nginx, systemd, Cloudflare, certbot and PostgreSQL providers
translated into :class:`~releasectl.errors.ProviderError`.
"""
from __future__ import annotations

import logging
import threading
import time
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from dataclasses import dataclass, field
from pathlib import Path

from .archive import ArtifactError
from .backups import BackupError, BackupManager, BackupsRegistry
from .config import AppConfig
from .errors import OrchestratorError, PreconditionError, ProviderError
from .exit_codes import RETRYABLE_CODES, ExitCode
from .locking import RELEASE_SCOPE, LockManager
from .migrations import MigrationRunner
from .models import Site, SiteKind, TlsState
from .ports import PortsRegistry
from .providers.certbot import CertbotError, CertbotProvider
from .providers.cloudflare import CloudflareDnsProvider, CloudflareError
from .providers.health import HealthProbe
from .providers.nginx import NginxError, NginxProvider
from .providers.postgres import PostgresError, PostgresProvider
from .providers.systemd import SystemdError, SystemdProvider
from .proxyconf import ProxyConfigGenerator
from .releases import ReleasePipeline
from .state import StateRegistry
from .state.sites import SiteRegistry, SiteSpec
from .templates import TemplateEngine, TemplateRenderError, write_if_changed
from .tls import DnsClient, TLSCoordinator

logger = logging.getLogger("releasectl.orchestrator")

_PROVIDER_ERRORS: tuple[type[Exception], ...] = (
    ArtifactError,
    BackupError,
    CertbotError,
    CloudflareError,
    NginxError,
    PostgresError,
    SystemdError,
    TemplateRenderError,
)


@dataclass(slots=True)
class CommandResult:
    """Machine-readable outcome of a command."""

    command: str
    domain: str | None
    status: str
    message: str
    code: ExitCode = ExitCode.OK
    changed: bool = False
    detail: dict[str, object] = field(default_factory=dict)

    @property
    def retryable(self) -> bool:
        """Return True when re-running the same command may succeed."""
        return self.code in RETRYABLE_CODES

    @property
    def ok(self) -> bool:
        """Return True for a successful outcome."""
        return self.code is ExitCode.OK

    def to_dict(self) -> dict[str, object]:
        """Return the JSON representation emitted by ``--json``."""
        return {
            "command": self.command,
            "domain": self.domain,
            "status": self.status,
            "message": self.message,
            "code": int(self.code),
            "retryable": self.retryable,
            "changed": self.changed,
            "detail": self.detail,
        }

    @classmethod
    def from_error(
        cls,
        command: str,
        domain: str | None,
        error: OrchestratorError,
    ) -> CommandResult:
        """Build the result describing *error*."""
        detail = error.to_dict()
        return cls(
            command=command,
            domain=domain,
            status="error",
            message=str(error),
            code=error.exit_code,
            detail=detail,
        )


@contextmanager
def provider_errors(action: str) -> Iterator[None]:
    """Translate provider exceptions raised inside the block into ProviderError."""
    try:
        yield
    except _PROVIDER_ERRORS as exc:
        raise ProviderError(f"{action} failed: {exc}") from exc


class Orchestrator:
    """Wire the components together and run commands against them."""

    def __init__(
        self,
        config: AppConfig,
        *,
        locks: LockManager | None = None,
        templates: TemplateEngine | None = None,
        nginx: NginxProvider | None = None,
        systemd: SystemdProvider | None = None,
        certbot: CertbotProvider | None = None,
        postgres: PostgresProvider | None = None,
        probe: HealthProbe | None = None,
        dns: DnsClient | None = None,
        sleep: Callable[[float], None] | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        """Build the component graph from *config*, using injected providers when given."""
        self.config = config
        self.state = StateRegistry(config.registry_dir)
        self.state.ensure_root()
        self.locks = locks or LockManager(config.runtime_dir, config.lock_timeout)
        self.ports = PortsRegistry(
            registry=self.state,
            base_port=config.ports.base,
            strategy=config.ports.strategy,
        )
        self.sites = SiteRegistry(self.state, self.ports, self.locks)
        self.templates = templates or TemplateEngine.with_overrides(config.templates_dir)
        self.proxy = ProxyConfigGenerator(
            templates=self.templates,
            proxy=config.proxy,
            tls=config.tls,
            sites_root=config.sites_root,
        )
        self.nginx = nginx or NginxProvider(
            sites_available=config.proxy.sites_available,
            sites_enabled=config.proxy.sites_enabled,
            nginx_bin=config.proxy.nginx_bin,
        )
        self.systemd = systemd or SystemdProvider(
            templates=self.templates,
            systemd_dir=config.systemd.unit_dir or Path("/etc/systemd/system"),
            systemctl_bin=config.systemd.systemctl_bin,
        )
        self.certbot = certbot or CertbotProvider(
            state_dir=config.state_dir,
            live_dir=config.tls.live_dir,
            webroot=config.tls.acme_webroot,
            certbot_bin=config.tls.certbot_bin,
            email=config.tls.email,
        )
        self.postgres = postgres or PostgresProvider(
            psql_bin=config.database.psql_bin,
            pg_dump_bin=config.database.pg_dump_bin,
            pg_restore_bin=config.database.pg_restore_bin,
            schema=config.database.schema,
        )
        self.backups = BackupManager(
            registry=BackupsRegistry(config.backups.root, config.backups.index),
            sites=self.sites,
            locks=self.locks,
            postgres=self.postgres,
            retention_days=config.backups.retention_days,
        )
        self.migrations = MigrationRunner(
            sites=self.sites,
            locks=self.locks,
            postgres=self.postgres,
            backups=self.backups,
        )
        self.probe = probe or HealthProbe(
            timeout=config.health.timeout,
            static_origin=config.health.static_origin,
            https_port=config.proxy.https_port,
        )
        self.pipeline = ReleasePipeline(
            sites=self.sites,
            locks=self.locks,
            migrations=self.migrations,
            systemd=self.systemd,
            probe=self.probe,
            health=config.health,
            releases_root=config.releases_root,
            sites_root=config.sites_root,
            sleep=sleep,
            clock=clock,
        )
        self._dns = dns
        self._tls: TLSCoordinator | None = None
        self._sleep = sleep
        self._clock = clock

    def close(self) -> None:
        """Release HTTP clients held by the providers."""
        self.probe.close()
        if isinstance(self._dns, CloudflareDnsProvider):
            self._dns.close()

    # ------------------------------------------------------------------
    @property
    def tls(self) -> TLSCoordinator:
        """Return the TLS coordinator, connecting to the DNS provider on first use."""
        if self._tls is None:
            if self._dns is None:
                try:
                    self._dns = CloudflareDnsProvider.from_config(self.config.edge)
                except CloudflareError as exc:
                    raise PreconditionError(str(exc)) from exc
            self._tls = TLSCoordinator(
                sites=self.sites,
                locks=self.locks,
                dns=self._dns,
                issuer=self.certbot,
                tls_config=self.config.tls,
                edge_config=self.config.edge,
                sleep=self._sleep,
                clock=self._clock,
            )
        return self._tls

    # Sites ------------------------------------------------------------
    def provision(
        self,
        domain: str,
        kind: SiteKind,
        *,
        port: int | None = None,
        service: str | None = None,
        command: str | None = None,
        database_url: str | None = None,
        health_path: str = "/health",
    ) -> CommandResult:
        """Declare a site and install its service unit and proxy configuration.

        Safe to re-run: an identical declaration changes nothing and unchanged
        renderings neither rewrite files nor reload nginx.
        """
        if kind is SiteKind.PROCESS and not command:
            raise PreconditionError("Process sites need --command to start the backend.")
        existed = self.sites.find(domain) is not None
        site = self.sites.declare(
            SiteSpec(
                domain=domain,
                kind=kind,
                port=port,
                service=service,
                command=command,
                database_url=database_url,
                health_path=health_path,
            )
        )
        (self.config.sites_root / site.domain).mkdir(parents=True, exist_ok=True)

        steps: dict[str, object] = {"declared": not existed}
        if site.is_process:
            steps["unit"] = self._install_unit(site.domain)
        steps["proxy"] = self._install_proxy(site.domain)
        changed = any(bool(value) for value in steps.values())
        return CommandResult(
            command="provision",
            domain=site.domain,
            status="changed" if changed else "unchanged",
            message=(
                f"Provisioned {site.kind.value} site {site.domain}."
                if changed
                else f"Site {site.domain} already provisioned."
            ),
            changed=changed,
            detail={"site": self.sites.get(site.domain).to_dict(), "steps": steps},
        )

    def site_list(self) -> CommandResult:
        """Report every declared site."""
        sites = [site.to_dict() for site in self.sites.list_sites()]
        return CommandResult(
            command="site list",
            domain=None,
            status="ok",
            message=f"{len(sites)} site(s) declared.",
            detail={"sites": sites},
        )

    def site_show(self, domain: str) -> CommandResult:
        """Report a site with its releases and ledger summary."""
        site = self.sites.get(domain)
        detail: dict[str, object] = {
            "site": site.to_dict(),
            "releases": [release.to_dict() for release in self.sites.releases_for(site.domain)],
            "migrations": self.migrations.status(site.domain),
            "proxy_config": str(self.nginx.site_path(site.domain)),
            "proxy_enabled": self.nginx.is_enabled(site.domain),
        }
        if site.is_process:
            detail["service_active"] = self._service_active(site)
        return CommandResult(
            command="site show",
            domain=site.domain,
            status="ok",
            message=f"Site {site.domain} ({site.kind.value}).",
            detail=detail,
        )

    def deprovision(self, domain: str) -> CommandResult:
        """Stop serving a site and forget its declaration.

        The service unit, environment file and proxy configuration are removed
        and the port is freed; release trees, ledgers and backups stay on disk.
        """
        with self.locks.domain_lock(domain, RELEASE_SCOPE, operation="deprovision"):
            site = self.sites.get(domain)
            if site.is_process:
                service = site.service or site.domain
                with provider_errors(f"Service removal for {site.domain}"):
                    self.systemd.stop(service)
                    self.systemd.remove(service)
                self._environment_file(site.domain).unlink(missing_ok=True)
            with provider_errors(f"Proxy removal for {site.domain}"):
                self.nginx.remove(site.domain)
                self.nginx.reload()
            self.sites.deprovision(site.domain)
        return CommandResult(
            command="site remove",
            domain=site.domain,
            status="changed",
            message=f"Site {site.domain} removed; releases and backups were kept.",
            changed=True,
            detail={"site": site.to_dict()},
        )

    # Releases ---------------------------------------------------------
    def release(
        self,
        domain: str,
        artifact: Path,
        *,
        cancel: threading.Event | None = None,
    ) -> CommandResult:
        """Stage, migrate, swap and health-check *artifact*."""
        with provider_errors(f"Release of {domain}"):
            outcome = self.pipeline.release(domain, artifact, cancel=cancel)
        detail: dict[str, object] = {
            "release": outcome.release.to_dict(),
            "previous": outcome.previous_id,
            "reused": outcome.reused,
            "migrations": [record.to_dict() for record in outcome.migrations],
        }
        if outcome.health is not None:
            detail["health"] = outcome.health.summary()
        return CommandResult(
            command="release",
            domain=outcome.release.site_domain,
            status="changed" if outcome.changed else "unchanged",
            message=(
                f"Release {outcome.release.id} is active."
                if outcome.changed
                else f"Release {outcome.release.id} is already active."
            ),
            changed=outcome.changed,
            detail=detail,
        )

    def rollback(self, domain: str, *, cancel: threading.Event | None = None) -> CommandResult:
        """Return *domain* to its last known-good release."""
        with provider_errors(f"Rollback of {domain}"):
            restored = self.pipeline.rollback(domain, cancel=cancel)
        return CommandResult(
            command="rollback",
            domain=restored.site_domain,
            status="changed",
            message=f"Rolled back to release {restored.id}.",
            changed=True,
            detail={"release": restored.to_dict()},
        )

    # TLS --------------------------------------------------------------
    def switch_to_proxied(
        self,
        domain: str,
        *,
        cancel: threading.Event | None = None,
    ) -> CommandResult:
        """Walk the site from ``dns_only`` to ``proxied``.

        Every step is resumable: re-running after a timeout or cancellation
        continues from the state the previous run reached.
        """
        site = self.sites.get(domain)
        start_state = site.tls_state
        steps: list[str] = []
        if site.tls_state is TlsState.DNS_ONLY:
            self.tls.begin_issue(site.domain)
            steps.append("begin_issue")
        if self.sites.get(site.domain).tls_state is TlsState.ISSUING:
            self.tls.poll_issue(site.domain, cancel=cancel)
            steps.append("poll_issue")
        if self._install_proxy(site.domain):
            steps.append("proxy_config")
        if self.sites.get(site.domain).tls_state is not TlsState.PROXIED:
            self.tls.enable_proxy(site.domain, cancel=cancel)
            steps.append("enable_proxy")
        changed = bool(steps)
        return CommandResult(
            command="switch-to-proxied",
            domain=site.domain,
            status="changed" if changed else "unchanged",
            message=f"{site.domain} is proxied.",
            changed=changed,
            detail={"from": start_state.value, "steps": steps},
        )

    def tls_begin(self, domain: str) -> CommandResult:
        """Request a certificate for *domain*."""
        before = self.sites.get(domain).tls_state
        site = self.tls.begin_issue(domain)
        return self._tls_result("tls begin", before, site.tls_state, site.domain)

    def tls_poll(self, domain: str, *, cancel: threading.Event | None = None) -> CommandResult:
        """Wait for the pending certificate and enable HTTPS on the origin."""
        before = self.sites.get(domain).tls_state
        site = self.tls.poll_issue(domain, cancel=cancel)
        self._install_proxy(site.domain)
        return self._tls_result("tls poll", before, site.tls_state, site.domain)

    def tls_enable(self, domain: str, *, cancel: threading.Event | None = None) -> CommandResult:
        """Switch the edge to proxied mode."""
        before = self.sites.get(domain).tls_state
        site = self.tls.enable_proxy(domain, cancel=cancel)
        return self._tls_result("tls enable", before, site.tls_state, site.domain)

    def tls_force_unproxy(self, domain: str) -> CommandResult:
        """Manual recovery: put the domain back into ``dns_only``."""
        before = self.sites.get(domain).tls_state
        site = self.tls.force_unproxy(domain)
        self._install_proxy(site.domain)
        return self._tls_result("tls force-unproxy", before, site.tls_state, site.domain)

    def tls_status(self, domain: str) -> CommandResult:
        """Report the TLS state, DNS mode and certificate of *domain*."""
        status = self.tls.status(domain)
        return CommandResult(
            command="tls status",
            domain=str(status["domain"]),
            status="ok",
            message=f"{status['domain']} is {status['tls_state']} (DNS {status['dns_mode']}).",
            detail=status,
        )

    # Migrations -------------------------------------------------------
    def migrate_apply(self, domain: str, *, source: Path | None = None) -> CommandResult:
        """Apply outstanding migrations."""
        records = self.migrations.apply_incremental(domain, source=source)
        return CommandResult(
            command="migrate apply",
            domain=domain,
            status="changed" if records else "unchanged",
            message=(
                f"Applied {len(records)} migration(s)." if records else "No pending migrations."
            ),
            changed=bool(records),
            detail={"applied": [record.to_dict() for record in records]},
        )

    def migrate_reset(
        self,
        domain: str,
        confirmation: str | None,
        *,
        source: Path | None = None,
    ) -> CommandResult:
        """Back up, drop and rebuild the site's schema."""
        result = self.migrations.destructive_reset(domain, confirmation, source=source)
        return CommandResult(
            command="migrate reset",
            domain=domain,
            status="changed",
            message=(
                f"Schema rebuilt with {len(result.applied)} migration(s); "
                f"backup {result.backup.id} taken first."
            ),
            changed=True,
            detail={
                "backup": result.backup.to_dict(),
                "applied": [record.to_dict() for record in result.applied],
            },
        )

    def migrate_revert(
        self,
        domain: str,
        confirmation: str | None,
        *,
        steps: int = 1,
        source: Path | None = None,
    ) -> CommandResult:
        """Revert the most recent migrations."""
        records = self.migrations.revert(domain, confirmation, steps=steps, source=source)
        return CommandResult(
            command="migrate revert",
            domain=domain,
            status="changed",
            message=f"Reverted {len(records)} migration(s).",
            changed=True,
            detail={"reverted": [record.to_dict() for record in records]},
        )

    def migrate_status(self, domain: str, *, source: Path | None = None) -> CommandResult:
        """Report applied and pending migrations."""
        status = self.migrations.status(domain, source=source)
        pending = status["pending"]
        return CommandResult(
            command="migrate status",
            domain=domain,
            status="ok",
            message=f"{len(pending) if isinstance(pending, list) else 0} pending migration(s).",
            detail=status,
        )

    # Backups ----------------------------------------------------------
    def backup_run(self, domain: str | None = None) -> CommandResult:
        """Back up one site, or every site with a database when *domain* is None."""
        if domain is not None:
            with provider_errors(f"Backup of {domain}"):
                record = self.backups.backup(domain)
            return CommandResult(
                command="backup run",
                domain=record.site,
                status="changed",
                message=f"Backup {record.id} written.",
                changed=True,
                detail={"backups": [record.to_dict()]},
            )

        written: list[dict[str, object]] = []
        failures: dict[str, str] = {}
        for site in self.sites.list_sites():
            if not site.database_url:
                continue
            try:
                with provider_errors(f"Backup of {site.domain}"):
                    written.append(self.backups.backup(site.domain).to_dict())
            except OrchestratorError as exc:
                logger.error("Backup of %s failed: %s", site.domain, exc)
                failures[site.domain] = str(exc)
        detail: dict[str, object] = {"backups": written, "failures": failures}
        if failures:
            return CommandResult(
                command="backup run",
                domain=None,
                status="error",
                message=f"{len(failures)} backup(s) failed: {', '.join(sorted(failures))}.",
                code=ExitCode.PROVIDER,
                changed=bool(written),
                detail=detail,
            )
        return CommandResult(
            command="backup run",
            domain=None,
            status="changed" if written else "unchanged",
            message=f"{len(written)} backup(s) written.",
            changed=bool(written),
            detail=detail,
        )

    def backup_restore(
        self,
        domain: str,
        backup_id: str,
        confirmation: str | None,
    ) -> CommandResult:
        """Restore *backup_id* over the site's database."""
        with provider_errors(f"Restore of {domain}"):
            record = self.backups.restore(domain, backup_id, confirmation)
        return CommandResult(
            command="backup restore",
            domain=record.site,
            status="changed",
            message=f"Restored backup {record.id} (schema version {record.schema_version}).",
            changed=True,
            detail={"backup": record.to_dict()},
        )

    def backup_prune(self) -> CommandResult:
        """Delete expired backups."""
        with provider_errors("Backup prune"):
            removed = self.backups.prune()
        return CommandResult(
            command="backup prune",
            domain=None,
            status="changed" if removed else "unchanged",
            message=f"Removed {len(removed)} expired backup(s).",
            changed=bool(removed),
            detail={"removed": [record.id for record in removed]},
        )

    def backup_list(self, domain: str | None = None) -> CommandResult:
        """List recorded backups, optionally for a single site."""
        with provider_errors("Backup listing"):
            records = self.backups.list_backups(domain)
        return CommandResult(
            command="backup list",
            domain=domain,
            status="ok",
            message=f"{len(records)} backup(s).",
            detail={"backups": [record.to_dict() for record in records]},
        )

    def backup_schedule(
        self,
        *,
        releasectl_bin: str,
        config_file: Path | None = None,
        enable: bool = True,
    ) -> CommandResult:
        """Install the systemd timer that runs ``backup run --all``."""
        with provider_errors("Backup schedule"):
            changed = self.systemd.render_backup_timer(
                {"releasectl_bin": releasectl_bin, "config_file": config_file},
                {"schedule": self.config.backups.schedule, "randomized_delay": "15m"},
            )
            if enable:
                self.systemd.enable_backup_timer()
        return CommandResult(
            command="backup schedule",
            domain=None,
            status="changed" if changed else "unchanged",
            message=f"Backups scheduled for '{self.config.backups.schedule}'.",
            changed=changed,
            detail={"schedule": self.config.backups.schedule, "enabled": enable},
        )

    # ------------------------------------------------------------------
    def unit_context(self, domain: str) -> dict[str, object]:
        """Return the systemd template context for a process site."""
        site = self.sites.get(domain)
        environment: list[str] = [f"RELEASECTL_SITE={site.domain}"]
        return {
            "site_domain": site.domain,
            "service_user": self.config.service_user,
            "working_directory": str(self.pipeline.current_link(site.domain)),
            "exec_start": site.command,
            "port": site.port,
            "environment": environment,
            "environment_file": str(self._environment_file(site.domain))
            if site.database_url
            else None,
        }

    def _install_unit(self, domain: str) -> bool:
        site = self.sites.get(domain)
        service = site.service or site.domain
        changed = False
        if site.database_url:
            changed = write_if_changed(
                self._environment_file(site.domain),
                f"DATABASE_URL={site.database_url}\n",
                mode=0o600,
            )
        with provider_errors(f"Service unit for {site.domain}"):
            changed = self.systemd.render_unit(service, self.unit_context(site.domain)) or changed
            self.systemd.enable(service)
        return changed

    def _install_proxy(self, domain: str) -> bool:
        site = self.sites.get(domain)
        with provider_errors(f"Proxy configuration for {site.domain}"):
            result = self.nginx.install_site(site.domain, self.proxy.render(site))
            if result.validation_error:
                raise NginxError(f"nginx -t rejected the configuration: {result.validation_error}")
            enabled = self.nginx.enable(site.domain)
            if enabled and not result.changed:
                self.nginx.test_config()
                self.nginx.reload()
        return result.changed or enabled

    def _environment_file(self, domain: str) -> Path:
        return self.config.state_dir / "env" / f"{domain}.env"

    def _service_active(self, site: Site) -> bool | None:
        try:
            return self.systemd.is_active(site.service or site.domain)
        except SystemdError as exc:
            logger.warning("Could not query the service of %s: %s", site.domain, exc)
            return None

    def _tls_result(
        self,
        command: str,
        before: TlsState,
        after: TlsState,
        domain: str,
    ) -> CommandResult:
        changed = before is not after
        return CommandResult(
            command=command,
            domain=domain,
            status="changed" if changed else "unchanged",
            message=f"{domain}: {before.value} -> {after.value}.",
            changed=changed,
            detail={"from": before.value, "to": after.value},
        )


__all__ = ["CommandResult", "Orchestrator", "provider_errors"]
