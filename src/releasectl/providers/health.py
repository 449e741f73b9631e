"""HTTP health probes for process and static sites."""
from __future__ import annotations

import time
from dataclasses import dataclass
from urllib.parse import urlsplit, urlunsplit

import httpx

from ..models import Site


@dataclass(frozen=True, slots=True)
class HealthResult:
    """Outcome of a single probe."""

    ok: bool
    url: str
    status_code: int | None = None
    detail: str | None = None
    elapsed_ms: int = 0

    def summary(self) -> str:
        """Return a one-line description suitable for the release ledger."""
        if self.status_code is not None:
            return f"HTTP {self.status_code} from {self.url} in {self.elapsed_ms}ms"
        return f"{self.detail or 'no response'} from {self.url}"


class HealthProbe:
    """Probe a site the way traffic would reach it.

    Process sites are checked directly on ``127.0.0.1:<port><health_path>``.
    Static sites fetch ``/index.html`` through the local nginx with the site's
    ``Host`` header; once a certificate is installed the HTTPS listener is used
    (with SNI set to the domain) because the plain listener only redirects.
    """

    def __init__(
        self,
        *,
        timeout: float = 5.0,
        static_origin: str = "http://127.0.0.1",
        https_port: int = 443,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        """Configure probe timeouts and the local origin used for static sites."""
        self.static_origin = static_origin.rstrip("/")
        self.https_port = https_port
        self._client = httpx.Client(
            timeout=httpx.Timeout(timeout, connect=min(timeout, 5.0)),
            follow_redirects=False,
            verify=False,  # local origin; the certificate names the public domain
            transport=transport,
        )

    def close(self) -> None:
        """Close the underlying HTTP client."""
        self._client.close()

    def url_for(self, site: Site) -> str:
        """Return the URL probed for *site*."""
        if site.is_process:
            path = site.health_path if site.health_path.startswith("/") else f"/{site.health_path}"
            return f"http://127.0.0.1:{site.port}{path}"
        if site.tls_state.has_certificate:
            parts = urlsplit(self.static_origin)
            host = parts.hostname or "127.0.0.1"
            return urlunsplit(("https", f"{host}:{self.https_port}", "/index.html", "", ""))
        return f"{self.static_origin}/index.html"

    def check(self, site: Site) -> HealthResult:
        """Probe *site* once; any 2xx response counts as healthy."""
        url = self.url_for(site)
        headers: dict[str, str] = {}
        extensions: dict[str, object] = {}
        if not site.is_process:
            headers["Host"] = site.domain
            if url.startswith("https://"):
                extensions["sni_hostname"] = site.domain
        start = time.perf_counter()
        try:
            response = self._client.get(url, headers=headers, extensions=extensions)
        except httpx.HTTPError as exc:
            return HealthResult(
                ok=False,
                url=url,
                detail=f"{type(exc).__name__}: {exc}",
                elapsed_ms=int((time.perf_counter() - start) * 1000),
            )
        elapsed = int((time.perf_counter() - start) * 1000)
        return HealthResult(
            ok=response.is_success,
            url=url,
            status_code=response.status_code,
            elapsed_ms=elapsed,
        )


__all__ = ["HealthProbe", "HealthResult"]
