"""Tests for declaring sites and tracking their state."""
from __future__ import annotations

from pathlib import Path

import pytest

from releasectl.errors import (
    ConflictError,
    InvalidTransitionError,
    NotFoundError,
    PreconditionError,
)
from releasectl.locking import LockManager
from releasectl.models import Release, ReleaseStatus, SiteKind, TlsState
from releasectl.ports import PortsRegistry
from releasectl.state import SiteRegistry, SiteSpec, StateRegistry, validate_domain


@pytest.fixture
def registry(tmp_path: Path) -> SiteRegistry:
    """Return a site registry backed by *tmp_path*."""
    state = StateRegistry(tmp_path / "registry")
    state.ensure_root()
    ports = PortsRegistry(registry=state, base_port=8000)
    return SiteRegistry(state, ports, LockManager(tmp_path / "run"))


def _process(domain: str, port: int | None = None) -> SiteSpec:
    return SiteSpec(domain=domain, kind=SiteKind.PROCESS, port=port, command="/usr/bin/app")


def test_declare_is_idempotent(registry: SiteRegistry) -> None:
    first = registry.declare(SiteSpec(domain="WWW.Example.com", kind=SiteKind.STATIC))

    again = registry.declare(SiteSpec(domain="www.example.com", kind=SiteKind.STATIC))

    assert first.domain == "www.example.com"
    assert again.created_at == first.created_at
    assert first.tls_state is TlsState.DNS_ONLY
    assert [site.domain for site in registry.list_sites()] == ["www.example.com"]


def test_process_sites_get_sequential_ports(registry: SiteRegistry) -> None:
    api = registry.declare(_process("api.example.com"))
    admin = registry.declare(_process("admin.example.com"))

    assert (api.port, admin.port) == (8000, 8001)
    assert api.service == "api.example.com"


def test_declare_conflicts(registry: SiteRegistry) -> None:
    registry.declare(_process("api.example.com", port=8010))

    with pytest.raises(ConflictError, match="already declared as process"):
        registry.declare(SiteSpec(domain="api.example.com", kind=SiteKind.STATIC))
    with pytest.raises(ConflictError, match="port 8010"):
        registry.declare(_process("api.example.com", port=8011))
    with pytest.raises(ConflictError, match="already in use"):
        registry.declare(_process("other.example.com", port=8010))


def test_static_site_rejects_port(registry: SiteRegistry) -> None:
    with pytest.raises(PreconditionError, match="do not take a port"):
        registry.declare(SiteSpec(domain="www.example.com", kind=SiteKind.STATIC, port=8000))


@pytest.mark.parametrize("value", ["", "-bad.example.com", "bad.example.com.", "bad_name.com"])
def test_validate_domain_rejects(value: str) -> None:
    with pytest.raises(PreconditionError):
        validate_domain(value)


def test_get_unknown_site(registry: SiteRegistry) -> None:
    with pytest.raises(NotFoundError):
        registry.get("missing.example.com")


def test_tls_transitions_follow_the_table(registry: SiteRegistry) -> None:
    registry.declare(SiteSpec(domain="www.example.com", kind=SiteKind.STATIC))

    with pytest.raises(InvalidTransitionError, match="dns_only to proxied"):
        registry.update_tls_state("www.example.com", TlsState.PROXIED)

    registry.update_tls_state("www.example.com", TlsState.ISSUING)
    registry.update_tls_state("www.example.com", TlsState.ISSUED_VERIFIED)
    registry.update_tls_state("www.example.com", TlsState.PROXIED)
    forced = registry.update_tls_state("www.example.com", TlsState.DNS_ONLY, force=True)

    assert forced.tls_state is TlsState.DNS_ONLY


def test_active_release_must_exist(registry: SiteRegistry) -> None:
    registry.declare(SiteSpec(domain="www.example.com", kind=SiteKind.STATIC))

    with pytest.raises(NotFoundError):
        registry.set_active_release("www.example.com", "r0001-abc")

    registry.add_release(
        Release(id="r0001-abc", site_domain="www.example.com", artifact_digest="a")
    )
    site = registry.set_active_release("www.example.com", "r0001-abc")

    assert site.current_release_id == "r0001-abc"
    assert registry.next_release_sequence("www.example.com") == 2


def test_only_one_active_release(registry: SiteRegistry) -> None:
    registry.declare(SiteSpec(domain="www.example.com", kind=SiteKind.STATIC))
    first = registry.add_release(
        Release(
            id="r0001-a",
            site_domain="www.example.com",
            artifact_digest="a",
            status=ReleaseStatus.ACTIVE,
        )
    )
    second = registry.add_release(
        Release(id="r0002-b", site_domain="www.example.com", artifact_digest="b")
    )

    with pytest.raises(ConflictError, match="more than one active"):
        registry.update_releases("www.example.com", second.evolve(status=ReleaseStatus.ACTIVE))

    registry.update_releases(
        "www.example.com",
        first.evolve(status=ReleaseStatus.INACTIVE),
        second.evolve(status=ReleaseStatus.ACTIVE),
    )
    active = registry.active_release("www.example.com")
    assert active is not None and active.id == "r0002-b"
    assert registry.find_release_by_digest("www.example.com", "a") is not None


def test_duplicate_release_id_rejected(registry: SiteRegistry) -> None:
    registry.declare(SiteSpec(domain="www.example.com", kind=SiteKind.STATIC))
    release = Release(id="r0001-a", site_domain="www.example.com", artifact_digest="a")
    registry.add_release(release)

    with pytest.raises(ConflictError):
        registry.add_release(release)


def test_deprovision_frees_port_and_keeps_ledgers(registry: SiteRegistry) -> None:
    registry.declare(_process("api.example.com"))
    registry.add_release(Release(id="r0001-a", site_domain="api.example.com", artifact_digest="a"))

    registry.deprovision("api.example.com")

    assert registry.find("api.example.com") is None
    assert len(registry.releases_for("api.example.com")) == 1
    assert registry.declare(_process("other.example.com")).port == 8000
