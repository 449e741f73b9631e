"""TLS coordination: the DNS-mode / certificate-issuance state machine.

A domain moves ``dns_only -> issuing -> issued_verified -> proxied``.
Issuance needs the DNS record to resolve straight to the origin, so the
coordinator refuses to start while the edge proxies the domain, and only
turns the proxy on once a certificate has been issued and verified locally.
Every transition runs under the domain's ``tls`` lock; a concurrent request
for the same domain fails instead of queueing.
"""
from __future__ import annotations

import logging
import threading
import time
from collections.abc import Callable
from dataclasses import dataclass
from datetime import UTC, datetime
from enum import Enum
from pathlib import Path
from typing import Protocol, TypeVar, cast

from cryptography import x509
from cryptography.hazmat.primitives import serialization
from cryptography.x509.oid import NameOID

from .backoff import Backoff, BackoffExhausted
from .config import EdgeConfig, TLSConfig
from .errors import (
    DnsNotDirectError,
    InvalidTransitionError,
    IssueFailedError,
    IssueTimeoutError,
    ProviderError,
    TimeoutExceededError,
)
from .locking import TLS_SCOPE, LockManager
from .models import Site, TlsState
from .providers.certbot import CertbotError, IssueStatus
from .providers.cloudflare import CloudflareError, ProxyMode
from .state.sites import SiteRegistry

logger = logging.getLogger("releasectl.tls")

T = TypeVar("T")


class DnsClient(Protocol):
    """Edge provider operations the coordinator relies on."""

    def get_proxy_mode(self, domain: str) -> ProxyMode:
        """Return the current proxy mode of *domain*."""

    def set_proxy_mode(self, domain: str, mode: ProxyMode) -> int:
        """Switch *domain* to *mode*."""


class CertificateIssuer(Protocol):
    """Certificate-issuance operations the coordinator relies on."""

    def request(self, domain: str) -> int:
        """Start issuance for *domain*."""

    def status(self, domain: str) -> IssueStatus:
        """Return the state of the latest issuance request."""

    def certificate_paths(self, domain: str) -> tuple[Path, Path]:
        """Return the ``(certificate, key)`` paths for *domain*."""

    def failure_detail(self, domain: str) -> str:
        """Describe why the latest request failed."""


class TLSValidationSeverity(Enum):
    """Validation severities for TLS checks."""

    OK = "ok"
    WARNING = "warning"
    ERROR = "error"


@dataclass(frozen=True)
class TLSValidationFinding:
    """Individual validation check outcome."""

    scope: str
    check: str
    severity: TLSValidationSeverity
    message: str
    path: Path | None = None


@dataclass(frozen=True)
class TLSMaterial:
    """Concrete TLS assets (certificate and private key)."""

    certificate: Path
    key: Path


@dataclass(frozen=True)
class TLSValidationReport:
    """Aggregate validation results for a certificate/key pair."""

    domain: str
    material: TLSMaterial
    findings: tuple[TLSValidationFinding, ...]
    not_valid_before: datetime | None
    not_valid_after: datetime | None

    @property
    def has_errors(self) -> bool:
        """Return True when any finding is classified as an error."""
        return any(f.severity is TLSValidationSeverity.ERROR for f in self.findings)

    @property
    def has_warnings(self) -> bool:
        """Return True when the report includes warning findings."""
        return any(f.severity is TLSValidationSeverity.WARNING for f in self.findings)

    @property
    def status(self) -> TLSValidationSeverity:
        """Return the overall status derived from the findings."""
        if self.has_errors:
            return TLSValidationSeverity.ERROR
        if self.has_warnings:
            return TLSValidationSeverity.WARNING
        return TLSValidationSeverity.OK

    def error_messages(self) -> list[str]:
        """Return the messages of error findings."""
        return [f.message for f in self.findings if f.severity is TLSValidationSeverity.ERROR]

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation of the report."""
        return {
            "domain": self.domain,
            "paths": {
                "certificate": str(self.material.certificate),
                "key": str(self.material.key),
            },
            "status": self.status.value,
            "not_valid_before": (
                self.not_valid_before.isoformat() if self.not_valid_before else None
            ),
            "not_valid_after": (
                self.not_valid_after.isoformat() if self.not_valid_after else None
            ),
            "findings": [
                {
                    "scope": finding.scope,
                    "check": finding.check,
                    "severity": finding.severity.value,
                    "message": finding.message,
                    "path": str(finding.path) if finding.path is not None else None,
                }
                for finding in self.findings
            ],
        }


class PublicKeyProtocol(Protocol):
    """Protocol covering public keys exposing ``public_bytes``."""

    def public_bytes(
        self,
        *,
        encoding: serialization.Encoding,
        format: serialization.PublicFormat,
    ) -> bytes:
        """Return the public key bytes in the requested encoding/format."""


class PrivateKeyProtocol(Protocol):
    """Protocol for private keys that can provide a matching public key."""

    def public_key(self) -> PublicKeyProtocol:
        """Return the associated public key object."""


class CertificateVerifier:
    """Check that an issued certificate is usable for a domain."""

    def __init__(self, warn_expiry_days: int = 30) -> None:
        """Capture the expiry warning threshold."""
        self._warn_expiry_days = warn_expiry_days

    def verify(
        self,
        domain: str,
        material: TLSMaterial,
        *,
        now: datetime | None = None,
    ) -> TLSValidationReport:
        """Validate *material* for *domain* and return a structured report."""
        now = now or datetime.now(UTC)
        findings: list[TLSValidationFinding] = []
        not_before: datetime | None = None
        not_after: datetime | None = None

        for scope, path in (("certificate", material.certificate), ("key", material.key)):
            if not path.exists():
                findings.append(
                    TLSValidationFinding(
                        scope=scope,
                        check="exists",
                        severity=TLSValidationSeverity.ERROR,
                        message=f"{scope.capitalize()} file {path} is missing.",
                        path=path,
                    )
                )
        if findings:
            return TLSValidationReport(domain, material, tuple(findings), None, None)

        cert_obj: x509.Certificate | None = None
        key_obj: PrivateKeyProtocol | None = None
        try:
            cert_obj = _load_certificate(material.certificate)
        except ValueError as exc:
            findings.append(
                TLSValidationFinding(
                    scope="certificate",
                    check="parse",
                    severity=TLSValidationSeverity.ERROR,
                    message=f"Failed to parse certificate: {exc}",
                    path=material.certificate,
                )
            )
        try:
            key_obj = _load_private_key(material.key)
        except (ValueError, TypeError) as exc:
            findings.append(
                TLSValidationFinding(
                    scope="key",
                    check="parse",
                    severity=TLSValidationSeverity.ERROR,
                    message=f"Failed to parse private key: {exc}",
                    path=material.key,
                )
            )

        if cert_obj is not None and key_obj is not None:
            matched = _public_keys_match(cert_obj, key_obj)
            findings.append(
                TLSValidationFinding(
                    scope="certificate",
                    check="match",
                    severity=TLSValidationSeverity.OK if matched else TLSValidationSeverity.ERROR,
                    message=(
                        "Certificate and key match."
                        if matched
                        else "Certificate does not match the private key."
                    ),
                    path=material.certificate,
                )
            )

        if cert_obj is not None:
            names = _certificate_names(cert_obj)
            covered = any(_name_matches(name, domain) for name in names)
            findings.append(
                TLSValidationFinding(
                    scope="certificate",
                    check="domain",
                    severity=TLSValidationSeverity.OK if covered else TLSValidationSeverity.ERROR,
                    message=(
                        f"Certificate covers {domain}."
                        if covered
                        else f"Certificate names {', '.join(names) or '(none)'} do not cover "
                        f"{domain}."
                    ),
                    path=material.certificate,
                )
            )

            not_before = cert_obj.not_valid_before_utc
            not_after = cert_obj.not_valid_after_utc
            if not_before > now:
                findings.append(
                    TLSValidationFinding(
                        scope="certificate",
                        check="expiry",
                        severity=TLSValidationSeverity.ERROR,
                        message=f"Certificate is not valid before {not_before.isoformat()}",
                        path=material.certificate,
                    )
                )
            elif not_after <= now:
                findings.append(
                    TLSValidationFinding(
                        scope="certificate",
                        check="expiry",
                        severity=TLSValidationSeverity.ERROR,
                        message=f"Certificate expired on {not_after.isoformat()}",
                        path=material.certificate,
                    )
                )
            else:
                days_remaining = (not_after - now).days
                soon = days_remaining <= self._warn_expiry_days
                findings.append(
                    TLSValidationFinding(
                        scope="certificate",
                        check="expiry",
                        severity=(
                            TLSValidationSeverity.WARNING if soon else TLSValidationSeverity.OK
                        ),
                        message=(
                            "Certificate expires soon "
                            f"({not_after.isoformat()}, {days_remaining} day(s) remaining)"
                            if soon
                            else f"Certificate valid until {not_after.isoformat()}"
                        ),
                        path=material.certificate,
                    )
                )

        return TLSValidationReport(domain, material, tuple(findings), not_before, not_after)


class TLSCoordinator:
    """Drive a domain through the TLS state machine."""

    def __init__(
        self,
        *,
        sites: SiteRegistry,
        locks: LockManager,
        dns: DnsClient,
        issuer: CertificateIssuer,
        tls_config: TLSConfig,
        edge_config: EdgeConfig,
        verifier: CertificateVerifier | None = None,
        sleep: Callable[[float], None] | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        """Wire the coordinator to its registry, lock manager and clients."""
        self._sites = sites
        self._locks = locks
        self._dns = dns
        self._issuer = issuer
        self._tls = tls_config
        self._edge = edge_config
        self._verifier = verifier or CertificateVerifier(tls_config.warn_expiry_days)
        self._sleep = sleep
        self._clock = clock

    # ------------------------------------------------------------------
    def begin_issue(self, domain: str) -> Site:
        """Move ``dns_only -> issuing`` and request a certificate.

        Raises :class:`DnsNotDirectError` without side effects when the edge
        currently proxies the domain.
        """
        with self._locks.domain_lock(domain, TLS_SCOPE, operation="tls.begin"):
            site = self._sites.get(domain)
            if site.tls_state is TlsState.ISSUING:
                if self._call(self._issuer.status, site.domain) is IssueStatus.NOT_REQUESTED:
                    self._call(self._issuer.request, site.domain)
                return site
            if site.tls_state is not TlsState.DNS_ONLY:
                raise InvalidTransitionError(
                    f"Cannot begin issuance for {site.domain} in state {site.tls_state.value}."
                )
            mode = self._call(self._dns.get_proxy_mode, site.domain)
            if mode is not ProxyMode.DIRECT:
                raise DnsNotDirectError(
                    f"DNS for {site.domain} is {mode.value}; switch it to direct mode so the "
                    "certificate authority can reach the origin."
                )
            pid = self._call(self._issuer.request, site.domain)
            logger.info("Requested certificate for %s (pid %s)", site.domain, pid)
            return self._sites.update_tls_state(site.domain, TlsState.ISSUING)

    def poll_issue(self, domain: str, *, cancel: threading.Event | None = None) -> Site:
        """Wait for issuance and move ``issuing -> issued_verified``.

        Timing out leaves the state at ``issuing`` so a later call resumes the
        wait. A failed issuance (or a certificate that does not verify) moves
        the domain back to ``dns_only``.
        """
        with self._locks.domain_lock(domain, TLS_SCOPE, operation="tls.poll"):
            site = self._sites.get(domain)
            if site.tls_state.has_certificate:
                return site
            if site.tls_state is not TlsState.ISSUING:
                raise InvalidTransitionError(
                    f"No issuance in progress for {site.domain} (state {site.tls_state.value})."
                )

            def probe() -> IssueStatus | None:
                status = self._call(self._issuer.status, site.domain)
                return None if status is IssueStatus.PENDING else status

            backoff = Backoff(
                initial=self._tls.poll_initial,
                maximum=self._tls.poll_max,
                deadline=self._tls.issue_deadline,
                cancel=cancel,
                sleep=self._sleep,
                clock=self._clock,
            )
            try:
                status = backoff.poll(probe, describe=f"Certificate issuance for {site.domain}")
            except BackoffExhausted as exc:
                raise IssueTimeoutError(
                    f"Certificate for {site.domain} still pending after {exc.elapsed:.0f}s; "
                    "poll again to resume."
                ) from exc

            if status is not IssueStatus.ISSUED:
                detail = self._call(self._issuer.failure_detail, site.domain)
                self._sites.update_tls_state(site.domain, TlsState.DNS_ONLY)
                raise IssueFailedError(f"Certificate issuance for {site.domain} failed: {detail}")

            report = self.verify(site.domain)
            if report.has_errors:
                self._sites.update_tls_state(site.domain, TlsState.DNS_ONLY)
                raise IssueFailedError(
                    f"Issued certificate for {site.domain} did not verify: "
                    + "; ".join(report.error_messages())
                )
            logger.info("Certificate for %s verified", site.domain)
            return self._sites.update_tls_state(site.domain, TlsState.ISSUED_VERIFIED)

    def enable_proxy(self, domain: str, *, cancel: threading.Event | None = None) -> Site:
        """Move ``issued_verified -> proxied`` once the edge confirms the change.

        This transition is never reversed automatically; use
        :meth:`force_unproxy` for manual recovery.
        """
        with self._locks.domain_lock(domain, TLS_SCOPE, operation="tls.enable"):
            site = self._sites.get(domain)
            if site.tls_state is TlsState.PROXIED:
                return site
            if site.tls_state is TlsState.ISSUING:
                raise IssueTimeoutError(
                    f"Certificate issuance for {site.domain} has not completed; "
                    "poll issuance before enabling the proxy."
                )
            if site.tls_state is not TlsState.ISSUED_VERIFIED:
                raise InvalidTransitionError(
                    f"Cannot enable the proxy for {site.domain} in state "
                    f"{site.tls_state.value}; a verified certificate is required."
                )

            self._call(self._dns.set_proxy_mode, site.domain, ProxyMode.PROXIED)

            def confirmed() -> bool | None:
                mode = self._call(self._dns.get_proxy_mode, site.domain)
                return True if mode is ProxyMode.PROXIED else None

            backoff = Backoff(
                initial=1.0,
                maximum=10.0,
                deadline=self._edge.propagation_deadline,
                cancel=cancel,
                sleep=self._sleep,
                clock=self._clock,
            )
            try:
                backoff.poll(confirmed, describe=f"Proxy propagation for {site.domain}")
            except BackoffExhausted as exc:
                raise TimeoutExceededError(
                    f"Edge did not report {site.domain} as proxied within "
                    f"{exc.elapsed:.0f}s; re-run to confirm."
                ) from exc
            logger.info("Proxy enabled for %s", site.domain)
            return self._sites.update_tls_state(site.domain, TlsState.PROXIED)

    def force_unproxy(self, domain: str) -> Site:
        """Manual recovery: switch DNS to direct mode and reset to ``dns_only``."""
        with self._locks.domain_lock(domain, TLS_SCOPE, operation="tls.force_unproxy"):
            site = self._sites.get(domain)
            self._call(self._dns.set_proxy_mode, site.domain, ProxyMode.DIRECT)
            logger.warning("Forced %s back to dns_only from %s", site.domain, site.tls_state.value)
            return self._sites.update_tls_state(site.domain, TlsState.DNS_ONLY, force=True)

    def verify(self, domain: str) -> TLSValidationReport:
        """Verify the certificate currently installed for *domain*."""
        certificate, key = self._issuer.certificate_paths(domain)
        return self._verifier.verify(domain, TLSMaterial(certificate=certificate, key=key))

    def status(self, domain: str) -> dict[str, object]:
        """Return the TLS picture for *domain* without changing anything."""
        site = self._sites.get(domain)
        try:
            dns_mode: str = self._dns.get_proxy_mode(site.domain).value
        except CloudflareError as exc:
            dns_mode = f"unknown ({exc})"
        report = self.verify(site.domain)
        return {
            "domain": site.domain,
            "tls_state": site.tls_state.value,
            "dns_mode": dns_mode,
            "issuance": self._call(self._issuer.status, site.domain).value,
            "certificate": report.to_dict(),
            "in_progress": self._locks.is_locked(site.domain, TLS_SCOPE),
        }

    # ------------------------------------------------------------------
    def _call(self, func: Callable[..., T], *args: object) -> T:
        try:
            return func(*args)
        except (CloudflareError, CertbotError) as exc:
            raise ProviderError(str(exc)) from exc


def _load_certificate(path: Path) -> x509.Certificate:
    data = path.read_bytes()
    try:
        return x509.load_pem_x509_certificate(data)
    except ValueError:
        return x509.load_der_x509_certificate(data)


def _load_private_key(path: Path) -> PrivateKeyProtocol:
    data = path.read_bytes()
    private_key = serialization.load_pem_private_key(data, password=None)
    return cast(PrivateKeyProtocol, private_key)


def _public_keys_match(cert: x509.Certificate, private_key: PrivateKeyProtocol) -> bool:
    cert_key = cert.public_key()
    key_public = private_key.public_key()
    cert_bytes = cert_key.public_bytes(
        encoding=serialization.Encoding.DER,
        format=serialization.PublicFormat.SubjectPublicKeyInfo,
    )
    key_bytes = key_public.public_bytes(
        encoding=serialization.Encoding.DER,
        format=serialization.PublicFormat.SubjectPublicKeyInfo,
    )
    return cert_bytes == key_bytes


def _certificate_names(cert: x509.Certificate) -> list[str]:
    try:
        extension = cert.extensions.get_extension_for_class(x509.SubjectAlternativeName)
    except x509.ExtensionNotFound:
        names: list[str] = []
    else:
        names = [str(name) for name in extension.value.get_values_for_type(x509.DNSName)]
    if names:
        return names
    return [
        str(attribute.value)
        for attribute in cert.subject.get_attributes_for_oid(NameOID.COMMON_NAME)
    ]


def _name_matches(pattern: str, domain: str) -> bool:
    pattern = pattern.lower().rstrip(".")
    domain = domain.lower().rstrip(".")
    if pattern == domain:
        return True
    if pattern.startswith("*."):
        suffix = pattern[1:]
        head, _, rest = domain.partition(".")
        return bool(head) and f".{rest}" == suffix
    return False


__all__ = [
    "CertificateIssuer",
    "CertificateVerifier",
    "DnsClient",
    "TLSCoordinator",
    "TLSMaterial",
    "TLSValidationFinding",
    "TLSValidationReport",
    "TLSValidationSeverity",
]
