"""Cloudflare DNS client used to flip records between direct and proxied mode."""
from __future__ import annotations

import logging
from enum import Enum
from typing import Any

import httpx

from ..config import EdgeConfig

logger = logging.getLogger("releasectl.cloudflare")

PROXYABLE_TYPES = frozenset({"A", "AAAA", "CNAME"})


class CloudflareError(RuntimeError):
    """Raised when the Cloudflare API rejects or fails a request."""


class ProxyMode(str, Enum):
    """How the edge serves a domain."""

    DIRECT = "direct"
    PROXIED = "proxied"


class CloudflareDnsProvider:
    """Minimal Cloudflare v4 client for the ``dns_records`` endpoints.

    Only records of proxyable types (A, AAAA, CNAME) are considered. A domain
    counts as proxied when any of its records is proxied, because a single
    proxied record is enough to break HTTP-01 validation against the origin.
    """

    def __init__(
        self,
        *,
        api_base: str,
        api_token: str,
        zone_id: str,
        timeout: float = 15.0,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        """Create an HTTP client bound to *zone_id*."""
        self.zone_id = zone_id
        self._client = httpx.Client(
            base_url=api_base.rstrip("/"),
            headers={
                "Authorization": f"Bearer {api_token}",
                "Content-Type": "application/json",
            },
            timeout=httpx.Timeout(timeout, connect=5.0),
            transport=transport,
        )

    @classmethod
    def from_config(
        cls,
        edge: EdgeConfig,
        *,
        transport: httpx.BaseTransport | None = None,
    ) -> CloudflareDnsProvider:
        """Build a client from the ``edge`` configuration section."""
        if not edge.api_token or not edge.zone_id:
            raise CloudflareError(
                "edge.api_token and edge.zone_id must be configured to reach Cloudflare."
            )
        return cls(
            api_base=edge.api_base,
            api_token=edge.api_token,
            zone_id=edge.zone_id,
            transport=transport,
        )

    def close(self) -> None:
        """Close the underlying HTTP client."""
        self._client.close()

    def __enter__(self) -> CloudflareDnsProvider:
        """Return the client for use in a ``with`` block."""
        return self

    def __exit__(self, *exc_info: object) -> None:
        """Close the client on exit."""
        self.close()

    # ------------------------------------------------------------------
    def records(self, domain: str) -> list[dict[str, Any]]:
        """Return the proxyable DNS records for *domain*."""
        payload = self._request(
            "GET",
            f"/zones/{self.zone_id}/dns_records",
            params={"name": domain, "per_page": 100},
        )
        result = payload.get("result") or []
        if not isinstance(result, list):
            raise CloudflareError("Unexpected dns_records payload from Cloudflare.")
        return [
            dict(record)
            for record in result
            if isinstance(record, dict) and record.get("type") in PROXYABLE_TYPES
        ]

    def get_proxy_mode(self, domain: str) -> ProxyMode:
        """Return the current proxy mode of *domain*."""
        records = self._require_records(domain)
        if any(bool(record.get("proxied")) for record in records):
            return ProxyMode.PROXIED
        return ProxyMode.DIRECT

    def set_proxy_mode(self, domain: str, mode: ProxyMode) -> int:
        """Switch every record of *domain* to *mode*; return how many changed.

        Records already in the requested mode are left alone, so the call is
        idempotent.
        """
        wanted = mode is ProxyMode.PROXIED
        changed = 0
        for record in self._require_records(domain):
            if bool(record.get("proxied")) == wanted:
                continue
            record_id = record.get("id")
            logger.info(
                "Setting %s record %s for %s to %s",
                record.get("type"),
                record_id,
                domain,
                mode.value,
            )
            self._request(
                "PATCH",
                f"/zones/{self.zone_id}/dns_records/{record_id}",
                json_body={"proxied": wanted},
            )
            changed += 1
        return changed

    # ------------------------------------------------------------------
    def _require_records(self, domain: str) -> list[dict[str, Any]]:
        records = self.records(domain)
        if not records:
            raise CloudflareError(f"No A/AAAA/CNAME records found for {domain}.")
        return records

    def _request(
        self,
        method: str,
        path: str,
        *,
        params: dict[str, Any] | None = None,
        json_body: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        try:
            response = self._client.request(method, path, params=params, json=json_body)
        except httpx.HTTPError as exc:
            raise CloudflareError(f"Cloudflare request {method} {path} failed: {exc}") from exc
        try:
            payload = response.json()
        except ValueError:
            payload = {}
        if not isinstance(payload, dict):
            payload = {}
        if response.is_error or not payload.get("success", False):
            errors = payload.get("errors") or []
            detail = "; ".join(
                str(item.get("message", item)) for item in errors if isinstance(item, dict)
            )
            raise CloudflareError(
                f"Cloudflare {method} {path} returned HTTP {response.status_code}"
                + (f": {detail}" if detail else ".")
            )
        return payload


__all__ = ["CloudflareDnsProvider", "CloudflareError", "ProxyMode"]
