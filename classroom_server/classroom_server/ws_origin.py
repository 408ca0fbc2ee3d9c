"""
WebSocket origin validator for deployments behind a proxy (ALB, nginx).

Channels' AllowedHostsOriginValidator rejects sockets without an Origin
header. Browsers always send one, but proxies can drop it and the CLI client
may omit it. When Origin is present its host must be in ALLOWED_HOSTS; when it
is missing, the Host header or the first X-Forwarded-Host must be.
Denials are logged (header values only).
"""
from __future__ import annotations

import logging
from typing import Iterable, List, Optional
from urllib.parse import urlparse

from channels.security.websocket import WebsocketDenier
from django.conf import settings
from django.http.request import is_same_domain, split_domain_port

logger = logging.getLogger(__name__)

_denier_app = WebsocketDenier.as_asgi()


def _header(scope: dict, name: bytes) -> Optional[str]:
    for key, value in scope.get("headers") or []:
        if key == name:
            return value.decode("latin-1").strip() or None
    return None


def _origin_hostname(origin: str) -> Optional[str]:
    try:
        return urlparse(origin).hostname
    except ValueError:
        return None


def _host_hostname(host: str) -> Optional[str]:
    domain, _port = split_domain_port(host.split(",")[0].strip().lower())
    return domain or None


def host_allowed(hostname: Optional[str], allowed_hosts: Iterable[str]) -> bool:
    if not hostname:
        return False
    return any(pattern == "*" or is_same_domain(hostname, pattern.lower()) for pattern in allowed_hosts)


class AllowedHostsOrForwardedHostOriginValidator:
    def __init__(self, application):
        self.application = application

    async def __call__(self, scope, receive, send):
        if scope.get("type") != "websocket":
            raise ValueError("AllowedHostsOrForwardedHostOriginValidator only supports WebSocket")

        allowed_hosts: List[str] = list(getattr(settings, "ALLOWED_HOSTS", None) or [])
        if settings.DEBUG and not allowed_hosts:
            allowed_hosts = ["localhost", "127.0.0.1", "[::1]"]

        origin = _header(scope, b"origin")
        host = _header(scope, b"host")
        forwarded_host = _header(scope, b"x-forwarded-host")

        if origin:
            candidates = [_origin_hostname(origin)]
        else:
            candidates = [_host_hostname(h) for h in (host, forwarded_host) if h]

        if any(host_allowed(c, allowed_hosts) for c in candidates):
            return await self.application(scope, receive, send)

        logger.warning(
            "WebSocket origin denied: origin=%s host=%s x_forwarded_host=%s path=%s",
            origin or "(none)",
            host or "(none)",
            forwarded_host or "(none)",
            scope.get("path", ""),
        )
        return await _denier_app(scope, receive, send)
