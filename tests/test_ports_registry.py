"""Tests for the ports registry helper."""
from __future__ import annotations

from pathlib import Path

import pytest

from releasectl.ports import PortsRegistry, PortsRegistryError
from releasectl.state import StateRegistry


@pytest.fixture
def ports(tmp_path: Path) -> PortsRegistry:
    """Return a ports registry rooted at a temporary path."""
    registry = StateRegistry(tmp_path / "registry")
    return PortsRegistry(registry=registry, base_port=8000)


def test_reserve_assigns_sequential_ports(ports: PortsRegistry) -> None:
    """Reserve allocates ports sequentially starting at the base port."""
    first = ports.reserve("api.example.com")
    second = ports.reserve("admin.example.com")
    assert first == 8000
    assert second == 8001
    assert ports.get_port("api.example.com") == 8000
    assert ports.get_port("ADMIN.example.com") == 8001


def test_release_frees_port_for_reuse(ports: PortsRegistry) -> None:
    """Releasing a port makes it available for future reservations."""
    ports.reserve("a.example.com")
    ports.reserve("b.example.com")

    ports.release("a.example.com")
    assert ports.reserve("c.example.com") == 8000


def test_repeat_reserve_is_idempotent(ports: PortsRegistry) -> None:
    """Reserving again for the same domain returns the existing port."""
    port = ports.reserve("api.example.com")
    assert ports.reserve("api.example.com") == port
    assert ports.reserve("api.example.com", requested_port=port) == port
    assert len(ports.list_entries()) == 1


def test_reserve_different_port_for_same_domain_raises(ports: PortsRegistry) -> None:
    """A domain cannot silently move to another port."""
    ports.reserve("api.example.com")
    with pytest.raises(PortsRegistryError, match="already reserved"):
        ports.reserve("api.example.com", requested_port=9000)


def test_request_specific_port_and_collision(ports: PortsRegistry) -> None:
    """Specific port requests succeed when free and fail when in use."""
    assert ports.reserve("a.example.com", requested_port=8005) == 8005
    ports.reserve("b.example.com")

    with pytest.raises(PortsRegistryError, match="already in use"):
        ports.reserve("c.example.com", requested_port=8005)


def test_requested_port_out_of_range(ports: PortsRegistry) -> None:
    """Ports outside the TCP range are rejected."""
    with pytest.raises(PortsRegistryError, match="out of range"):
        ports.reserve("a.example.com", requested_port=70000)


def test_release_missing_port_raises(ports: PortsRegistry) -> None:
    """Releasing a port that does not exist raises an error."""
    ports.reserve("a.example.com")
    with pytest.raises(PortsRegistryError):
        ports.release("b.example.com")


def test_reserve_rejects_blank_domain(ports: PortsRegistry) -> None:
    """Blank domains are rejected."""
    with pytest.raises(PortsRegistryError):
        ports.reserve("   ")


def test_invalid_strategy_rejected(tmp_path: Path) -> None:
    """Only the sequential strategy is supported."""
    with pytest.raises(PortsRegistryError):
        PortsRegistry(registry=StateRegistry(tmp_path), base_port=8000, strategy="random")


def test_ports_registry_persist_failure(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    """Write failures bubble up as errors to callers."""
    registry = StateRegistry(tmp_path / "registry")
    ports = PortsRegistry(registry=registry, base_port=8000)

    def fail_write(self: StateRegistry, entries: list[dict[str, int]]) -> None:  # noqa: ARG001
        raise OSError("disk full")

    monkeypatch.setattr(StateRegistry, "write_ports", fail_write)

    with pytest.raises(OSError):
        ports.reserve("a.example.com")
