"""Shared fixtures: an orchestrator wired to recording providers."""

from __future__ import annotations

import subprocess
from collections.abc import Callable, Iterator, Sequence
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from pathlib import Path

import httpx
import pytest
from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import rsa
from cryptography.x509.oid import NameOID

from releasectl.config import AppConfig, load_config
from releasectl.models import Site
from releasectl.orchestrator import Orchestrator
from releasectl.providers.certbot import IssueStatus
from releasectl.providers.cloudflare import ProxyMode
from releasectl.providers.health import HealthProbe, HealthResult
from releasectl.providers.nginx import NginxError, NginxProvider
from releasectl.providers.postgres import PostgresError, PostgresProvider
from releasectl.providers.systemd import SystemdError, SystemdProvider
from releasectl.templates import TemplateEngine

FAIL_HEALTH_MARKER = "FAIL_HEALTH"


def write_self_signed(
    directory: Path,
    name: str,
    *,
    days: int = 60,
    not_before_offset: int = -1,
) -> tuple[Path, Path]:
    """Write ``fullchain.pem``/``privkey.pem`` for a self-signed certificate."""
    now = datetime.now(UTC)
    key = rsa.generate_private_key(public_exponent=65537, key_size=2048)
    subject = issuer = x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, name)])
    cert = (
        x509.CertificateBuilder()
        .subject_name(subject)
        .issuer_name(issuer)
        .public_key(key.public_key())
        .serial_number(x509.random_serial_number())
        .not_valid_before(now + timedelta(days=not_before_offset))
        .not_valid_after(now + timedelta(days=days))
        .add_extension(x509.SubjectAlternativeName([x509.DNSName(name)]), critical=False)
        .sign(key, hashes.SHA256())
    )
    directory.mkdir(parents=True, exist_ok=True)
    cert_path = directory / "fullchain.pem"
    key_path = directory / "privkey.pem"
    cert_path.write_bytes(cert.public_bytes(serialization.Encoding.PEM))
    key_path.write_bytes(
        key.private_bytes(
            encoding=serialization.Encoding.PEM,
            format=serialization.PrivateFormat.TraditionalOpenSSL,
            encryption_algorithm=serialization.NoEncryption(),
        )
    )
    return cert_path, key_path


def _completed(args: Sequence[str], stdout: str = "") -> subprocess.CompletedProcess[str]:
    return subprocess.CompletedProcess(list(args), returncode=0, stdout=stdout, stderr="")


class FakeClock:
    """Monotonic clock that only advances when something sleeps."""

    def __init__(self) -> None:
        self.now = 0.0
        self.sleeps: list[float] = []

    def __call__(self) -> float:
        return self.now

    def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += seconds


class RecordingNginx(NginxProvider):
    """Nginx provider that records commands instead of running them."""

    def __init__(self, root: Path) -> None:
        super().__init__(
            sites_available=root / "sites-available",
            sites_enabled=root / "sites-enabled",
        )
        self.commands: list[tuple[str, ...]] = []
        self.reject = False

    def _run_nginx(self, args: Sequence[str]) -> subprocess.CompletedProcess[str]:
        self.commands.append(tuple(args))
        if self.reject and list(args) == ["-t"]:
            raise NginxError("nginx -t failed (exit 1): unexpected directive")
        return _completed(["nginx", *args])


class RecordingSystemd(SystemdProvider):
    """Systemd provider that records systemctl calls instead of running them."""

    def __init__(self, templates: TemplateEngine, unit_dir: Path) -> None:
        super().__init__(templates=templates, systemd_dir=unit_dir)
        self.calls: list[tuple[str, ...]] = []
        self.failing: set[str] = set()

    def _systemctl(self, *args: str, check: bool = True) -> subprocess.CompletedProcess[str]:
        self.calls.append(args)
        if args and args[0] in self.failing:
            raise SystemdError(f"systemctl {args[0]} failed (exit 1): unit failed")
        return _completed(["systemctl", *args], stdout="active\n")


class FakePostgres(PostgresProvider):
    """Database tools double that records every call in order."""

    def __init__(self) -> None:
        super().__init__()
        self.events: list[tuple[str, str]] = []
        self.failing_scripts: set[str] = set()
        self.fail_dump = False
        self.fail_reset = False
        self.fail_restore = False

    def run_script(self, database_url: str, script: Path) -> subprocess.CompletedProcess[str]:
        self.events.append(("run", script.name))
        if script.name in self.failing_scripts:
            raise PostgresError(f"psql failed (exit 3): error in {script.name}")
        return _completed(["psql", str(script)])

    def reset_schema(self, database_url: str) -> subprocess.CompletedProcess[str]:
        self.events.append(("reset", self.schema))
        if self.fail_reset:
            raise PostgresError("psql failed (exit 2): could not drop schema")
        return _completed(["psql"])

    def dump(self, database_url: str, destination: Path) -> subprocess.CompletedProcess[str]:
        self.events.append(("dump", destination.name))
        if self.fail_dump:
            raise PostgresError("pg_dump failed (exit 1): connection refused")
        destination.parent.mkdir(parents=True, exist_ok=True)
        destination.write_bytes(b"PGDMP fake dump\n")
        return _completed(["pg_dump"])

    def restore(self, database_url: str, source: Path) -> subprocess.CompletedProcess[str]:
        self.events.append(("restore", source.name))
        if self.fail_restore:
            raise PostgresError("pg_restore failed (exit 1): bad archive")
        return _completed(["pg_restore"])


class ScriptedProbe(HealthProbe):
    """Health probe that fails while the current release carries a marker file."""

    def __init__(self, sites_root: Path) -> None:
        super().__init__(transport=httpx.MockTransport(lambda request: httpx.Response(200)))
        self.sites_root = sites_root
        self.checked: list[str | None] = []

    def check(self, site: Site) -> HealthResult:
        self.checked.append(site.current_release_id)
        url = self.url_for(site)
        if (self.sites_root / site.domain / "current" / FAIL_HEALTH_MARKER).exists():
            return HealthResult(ok=False, url=url, status_code=503)
        return HealthResult(ok=True, url=url, status_code=200)


class FakeDns:
    """Edge DNS double; ``lag`` delays how long proxied mode takes to show."""

    def __init__(self) -> None:
        self.modes: dict[str, ProxyMode] = {}
        self.changes: list[tuple[str, ProxyMode]] = []
        self.lag = 0
        self._reads_until_visible: dict[str, int] = {}

    def get_proxy_mode(self, domain: str) -> ProxyMode:
        remaining = self._reads_until_visible.get(domain, 0)
        if remaining > 0:
            self._reads_until_visible[domain] = remaining - 1
            return ProxyMode.DIRECT
        return self.modes.get(domain, ProxyMode.DIRECT)

    def set_proxy_mode(self, domain: str, mode: ProxyMode) -> int:
        self.changes.append((domain, mode))
        self.modes[domain] = mode
        if mode is ProxyMode.PROXIED:
            self._reads_until_visible[domain] = self.lag
        return 1


class FakeIssuer:
    """Certificate issuer double that reports scripted statuses."""

    def __init__(self, live_dir: Path) -> None:
        self.live_dir = live_dir
        self.outcomes: list[IssueStatus] = [IssueStatus.ISSUED]
        self.requests: list[str] = []
        self.certificate_name: str | None = None
        self._queues: dict[str, list[IssueStatus]] = {}

    def request(self, domain: str) -> int:
        self.requests.append(domain)
        self._queues[domain] = list(self.outcomes)
        return 4242

    def status(self, domain: str) -> IssueStatus:
        queue = self._queues.get(domain)
        if queue is None:
            return IssueStatus.NOT_REQUESTED
        status = queue.pop(0) if len(queue) > 1 else queue[0]
        if status is IssueStatus.ISSUED and not (self.live_dir / domain / "fullchain.pem").exists():
            write_self_signed(self.live_dir / domain, self.certificate_name or domain)
        return status

    def certificate_paths(self, domain: str) -> tuple[Path, Path]:
        directory = self.live_dir / domain
        return directory / "fullchain.pem", directory / "privkey.pem"

    def failure_detail(self, domain: str) -> str:
        return "Challenge failed for domain"


@dataclass
class Harness:
    """An orchestrator plus handles on every recording collaborator."""

    root: Path
    config: AppConfig
    orchestrator: Orchestrator
    nginx: RecordingNginx
    systemd: RecordingSystemd
    postgres: FakePostgres
    probe: ScriptedProbe
    dns: FakeDns
    issuer: FakeIssuer
    clock: FakeClock

    def artifact(self, name: str, files: dict[str, str]) -> Path:
        """Create an artifact directory holding *files*."""
        directory = self.root / "artifacts" / name
        for relative, content in files.items():
            path = directory / relative
            path.parent.mkdir(parents=True, exist_ok=True)
            path.write_text(content, encoding="utf-8")
        return directory


def build_config(root: Path, **extra: object) -> AppConfig:
    """Return a configuration rooted entirely under *root*."""
    overrides: dict[str, object] = {
        "state_dir": str(root / "state"),
        "logs_dir": str(root / "logs"),
        "runtime_dir": str(root / "run"),
        "templates_dir": str(root / "templates"),
        "releases_root": str(root / "releases"),
        "sites_root": str(root / "sites"),
        "proxy": {
            "sites_available": str(root / "nginx" / "sites-available"),
            "sites_enabled": str(root / "nginx" / "sites-enabled"),
            "log_dir": str(root / "nginx" / "logs"),
        },
        "tls": {
            "live_dir": str(root / "live"),
            "acme_webroot": str(root / "acme"),
            "issue_deadline": 30.0,
            "poll_initial": 1.0,
            "poll_max": 5.0,
        },
        "edge": {"propagation_deadline": 10.0},
        "health": {"attempts": 2, "initial_delay": 1.0, "max_delay": 1.0},
        "backups": {"root": str(root / "backups")},
        "systemd": {"unit_dir": str(root / "systemd")},
    }
    overrides.update(extra)
    return load_config(config_file=root / "missing.yml", env={}, overrides=overrides)


@pytest.fixture
def make_certificate() -> Callable[..., tuple[Path, Path]]:
    """Expose the self-signed certificate writer to tests."""
    return write_self_signed


@pytest.fixture
def harness(tmp_path: Path) -> Iterator[Harness]:
    """Return an orchestrator whose external systems are all recorded fakes."""
    config = build_config(tmp_path)
    templates = TemplateEngine.with_overrides(None)
    nginx = RecordingNginx(tmp_path / "nginx")
    systemd = RecordingSystemd(templates, tmp_path / "systemd")
    postgres = FakePostgres()
    probe = ScriptedProbe(config.sites_root)
    dns = FakeDns()
    issuer = FakeIssuer(config.tls.live_dir)
    clock = FakeClock()
    orchestrator = Orchestrator(
        config,
        templates=templates,
        nginx=nginx,
        systemd=systemd,
        certbot=issuer,  # type: ignore[arg-type]
        postgres=postgres,
        probe=probe,
        dns=dns,
        sleep=clock.sleep,
        clock=clock,
    )
    yield Harness(
        root=tmp_path,
        config=config,
        orchestrator=orchestrator,
        nginx=nginx,
        systemd=systemd,
        postgres=postgres,
        probe=probe,
        dns=dns,
        issuer=issuer,
        clock=clock,
    )
    orchestrator.close()
