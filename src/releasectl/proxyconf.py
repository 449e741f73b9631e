"""Reverse-proxy virtual host generation."""
from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path

from .config import ProxyConfig, TLSConfig
from .models import Site
from .templates import TemplateEngine

# Extensions of build outputs that carry a content hash in their file name.
HASHED_ASSET_EXTENSIONS = (
    "css",
    "js",
    "mjs",
    "map",
    "png",
    "jpg",
    "jpeg",
    "gif",
    "svg",
    "webp",
    "avif",
    "ico",
    "woff",
    "woff2",
    "ttf",
)


@dataclass(slots=True)
class ProxyConfigGenerator:
    """Render nginx configuration text for a site.

    :meth:`render` depends only on the site record and the configuration the
    generator was built with, so identical input always yields byte-identical
    output. That keeps installs idempotent: an unchanged rendering never
    triggers an nginx reload.
    """

    templates: TemplateEngine
    proxy: ProxyConfig
    tls: TLSConfig
    sites_root: Path

    def document_root(self, site: Site) -> Path:
        """Return the stable document root (a symlink swapped per release)."""
        return self.sites_root / site.domain / "current"

    def context(self, site: Site) -> dict[str, object]:
        """Return the template context for *site*."""
        certificate = self.tls.live_dir / site.domain / "fullchain.pem"
        certificate_key = self.tls.live_dir / site.domain / "privkey.pem"
        context: dict[str, object] = {
            "server_name": site.domain,
            "http_listen_port": self.proxy.http_port,
            "https_listen_port": self.proxy.https_port,
            "access_log": str(self.proxy.log_dir / f"{site.domain}.access.log"),
            "error_log": str(self.proxy.log_dir / f"{site.domain}.error.log"),
            "acme_webroot": str(self.tls.acme_webroot),
            "tls": {
                "enabled": site.tls_state.has_certificate,
                "certificate": str(certificate),
                "certificate_key": str(certificate_key),
            },
        }
        if site.is_process:
            context.update(
                {
                    "upstream_host": "127.0.0.1",
                    "upstream_port": site.port,
                    "proxy_timeout": self.proxy.timeout_seconds,
                    "max_body_size": self.proxy.max_body_size,
                    "map_suffix": _map_suffix(site.domain),
                }
            )
        else:
            context.update(
                {
                    "document_root": str(self.document_root(site)),
                    "hashed_extensions": list(HASHED_ASSET_EXTENSIONS),
                }
            )
        return context

    def template_name(self, site: Site) -> str:
        """Return the template used for *site*'s kind."""
        return "nginx/process.conf.j2" if site.is_process else "nginx/static.conf.j2"

    def render(self, site: Site) -> str:
        """Return the configuration text for *site*."""
        if site.is_process and site.port is None:
            raise ValueError(f"Process site '{site.domain}' has no port allocated.")
        return self.templates.render_to_string(self.template_name(site), self.context(site))


def _map_suffix(domain: str) -> str:
    return "".join(char if char.isalnum() else "_" for char in domain)


__all__ = ["HASHED_ASSET_EXTENSIONS", "ProxyConfigGenerator"]
