"""Clients for the external systems releasectl drives."""
from __future__ import annotations

from .certbot import CertbotError, CertbotProvider, IssueStatus
from .cloudflare import CloudflareDnsProvider, CloudflareError, ProxyMode
from .health import HealthProbe, HealthResult
from .nginx import NginxError, NginxInstallResult, NginxProvider
from .postgres import PostgresError, PostgresProvider
from .systemd import SystemdError, SystemdProvider

__all__ = [
    "CertbotError",
    "CertbotProvider",
    "CloudflareDnsProvider",
    "CloudflareError",
    "HealthProbe",
    "HealthResult",
    "IssueStatus",
    "NginxError",
    "NginxInstallResult",
    "NginxProvider",
    "PostgresError",
    "PostgresProvider",
    "ProxyMode",
    "SystemdError",
    "SystemdProvider",
]
