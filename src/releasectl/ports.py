"""Port allocation helpers for process sites."""
from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from .state.registry import StateRegistry


class PortsRegistryError(RuntimeError):
    """Raised when port allocation or release fails."""


@dataclass(slots=True)
class PortsRegistry:
    """Manage the ports registry stored under ``ports.yml``."""

    registry: StateRegistry
    base_port: int
    strategy: str = "sequential"

    def __post_init__(self) -> None:
        """Validate initialiser parameters."""
        if self.base_port < 1:
            raise PortsRegistryError("Base port must be a positive integer.")
        if self.strategy != "sequential":
            raise PortsRegistryError(f"Unsupported port allocation strategy '{self.strategy}'.")

    # ------------------------------------------------------------------
    def list_entries(self) -> list[dict[str, Any]]:
        """Return the current port reservations sorted by port."""
        raw = self.registry.read_ports()
        ports = raw.get("ports", [])
        entries: list[dict[str, Any]] = []
        if isinstance(ports, Iterable):
            for item in ports:
                if not isinstance(item, dict):
                    continue
                domain = str(item.get("domain", "")).strip()
                port_value = item.get("port")
                if not domain:
                    continue
                if not isinstance(port_value, (int, str)):
                    continue
                try:
                    port = int(port_value)
                except ValueError:
                    continue
                entries.append({"domain": domain, "port": port})
        entries.sort(key=lambda entry: entry["port"])
        return entries

    def get_port(self, domain: str) -> int | None:
        """Return the reserved port for *domain*, if present."""
        normalized = _normalize_domain(domain)
        for entry in self.list_entries():
            if entry["domain"] == normalized:
                return entry["port"]
        return None

    def reserve(self, domain: str, *, requested_port: int | None = None) -> int:
        """Reserve a port for *domain* and return the assigned value.

        Reserving the same port again for the same domain is a no-op so that
        re-declaring a site stays idempotent.
        """
        normalized = _normalize_domain(domain)
        entries = self.list_entries()
        for entry in entries:
            if entry["domain"] != normalized:
                continue
            if requested_port is None or entry["port"] == requested_port:
                return int(entry["port"])
            raise PortsRegistryError(
                f"Port {entry['port']} already reserved for site '{normalized}'."
            )

        used_ports = {entry["port"] for entry in entries}
        if requested_port is not None:
            if requested_port < 1 or requested_port > 65535:
                raise PortsRegistryError(f"Requested port {requested_port} is out of range.")
            if requested_port in used_ports:
                raise PortsRegistryError(f"Port {requested_port} is already in use.")
            port = requested_port
        else:
            port = self._next_available_port(used_ports)

        entries.append({"domain": normalized, "port": port})
        self.registry.write_ports(entries)
        return port

    def release(self, domain: str) -> None:
        """Release the port reserved for *domain*."""
        normalized = _normalize_domain(domain)
        entries = self.list_entries()
        filtered = [entry for entry in entries if entry["domain"] != normalized]
        if len(filtered) == len(entries):
            raise PortsRegistryError(f"No port reservation found for site '{normalized}'.")
        self.registry.write_ports(filtered)

    # Internal helpers -------------------------------------------------
    def _next_available_port(self, used: set[int]) -> int:
        """Return the next free port using the configured strategy."""
        candidate = self.base_port
        while candidate in used:
            candidate += 1
        if candidate > 65535:
            raise PortsRegistryError("No free ports left above the configured base.")
        return candidate


def _normalize_domain(domain: str) -> str:
    """Return a normalised domain key."""
    normalized = domain.strip().lower()
    if not normalized:
        raise PortsRegistryError("Domain must be a non-empty string.")
    return normalized


__all__ = ["PortsRegistry", "PortsRegistryError"]
