"""Safe URL resolution: the trust boundary for every outbound request.

A URL is accepted only if its scheme is http/https and its host cannot reach
a loopback, private, link-local or carrier-grade NAT address. DNS names are
resolved and rejected if *any* resolved address is unsafe; a lookup failure
or an empty answer is treated as unsafe (fail closed).

The fetcher calls ``resolve`` again for every redirect hop, so a redirect that
lands on a blocked destination fails the whole call.
"""

from __future__ import annotations

import asyncio
import ipaddress
import socket
from typing import TYPE_CHECKING

import httpx
import structlog

from feedgate.errors import ErrorCode, ProxyError

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable

log = structlog.get_logger()

ALLOWED_SCHEMES: frozenset[str] = frozenset({"http", "https"})

BLOCKED_HOSTNAMES: frozenset[str] = frozenset({"localhost"})
BLOCKED_SUFFIXES: tuple[str, ...] = (".local", ".localhost", ".internal")

PRIVATE_IPV4_NETWORKS: list[ipaddress.IPv4Network] = [
    ipaddress.IPv4Network("10.0.0.0/8"),
    ipaddress.IPv4Network("127.0.0.0/8"),
    ipaddress.IPv4Network("0.0.0.0/8"),
    ipaddress.IPv4Network("169.254.0.0/16"),
    ipaddress.IPv4Network("172.16.0.0/12"),
    ipaddress.IPv4Network("192.168.0.0/16"),
    ipaddress.IPv4Network("100.64.0.0/10"),
]

PRIVATE_IPV6_NETWORKS: list[ipaddress.IPv6Network] = [
    ipaddress.IPv6Network("::1/128"),
    ipaddress.IPv6Network("::/128"),
    ipaddress.IPv6Network("fc00::/7"),
    ipaddress.IPv6Network("fe80::/10"),
]


def is_blocked_hostname(hostname: str) -> bool:
    """Return True for names that always point inside the local network."""
    value = hostname.lower().rstrip(".")
    return value in BLOCKED_HOSTNAMES or value.endswith(BLOCKED_SUFFIXES)


def is_private_address(address: str) -> bool:
    """Classify a literal IP address. Unparseable input counts as private."""
    try:
        ip = ipaddress.ip_address(address.split("%", 1)[0])
    except ValueError:
        return True

    if isinstance(ip, ipaddress.IPv6Address):
        if ip.ipv4_mapped is not None:
            ip = ip.ipv4_mapped
        else:
            return any(ip in net for net in PRIVATE_IPV6_NETWORKS)

    return any(ip in net for net in PRIVATE_IPV4_NETWORKS)


def _literal_ip(hostname: str) -> bool:
    try:
        ipaddress.ip_address(hostname.split("%", 1)[0])
    except ValueError:
        return False
    return True


async def system_lookup(hostname: str) -> list[str]:
    """Resolve every address for ``hostname`` using the event loop resolver."""
    loop = asyncio.get_running_loop()
    infos = await loop.getaddrinfo(hostname, None, type=socket.SOCK_STREAM)
    return [str(info[4][0]) for info in infos]


class SafeURLResolver:
    """Validates candidate URLs against the trust boundary.

    ``lookup`` is injectable so tests can pin DNS answers without touching
    the network.
    """

    def __init__(self, lookup: Callable[[str], Awaitable[list[str]]] | None = None) -> None:
        self._lookup = lookup or system_lookup

    async def is_safe_hostname(self, hostname: str) -> bool:
        if not hostname or is_blocked_hostname(hostname):
            return False
        if _literal_ip(hostname):
            return not is_private_address(hostname)

        try:
            addresses = await self._lookup(hostname.rstrip("."))
        except (OSError, UnicodeError):
            log.info("dns_lookup_failed", hostname=hostname)
            return False
        if not addresses:
            return False
        return not any(is_private_address(address) for address in addresses)

    async def resolve(self, raw_url: str) -> httpx.URL:
        """Parse and validate ``raw_url``.

        Raises ProxyError with INVALID_URL (400), PROTOCOL_NOT_ALLOWED (403)
        or URL_BLOCKED (403).
        """
        try:
            url = httpx.URL(raw_url.strip())
        except (httpx.InvalidURL, TypeError, ValueError) as exc:
            raise ProxyError(ErrorCode.INVALID_URL, "Invalid URL") from exc

        if not url.scheme:
            raise ProxyError(ErrorCode.INVALID_URL, "Invalid URL")

        if url.scheme not in ALLOWED_SCHEMES:
            raise ProxyError(ErrorCode.PROTOCOL_NOT_ALLOWED, "URL protocol not allowed")
        if not url.host:
            raise ProxyError(ErrorCode.INVALID_URL, "Invalid URL")

        if not await self.is_safe_hostname(url.host):
            log.warning("ssrf_blocked", url=str(url), host=url.host)
            raise ProxyError(ErrorCode.URL_BLOCKED, "URL blocked")

        return url
