"""Outbound host policy for the http-request node.

Evaluated before any network I/O, and again for every redirect hop.
:func:`check_url` rejects by name and by literal address, including the
shorthand IPv4 spellings the socket layer accepts (``127.1``,
``2130706433``, ``0x7f000001``).  :func:`ensure_public_address` then
resolves the host and rejects it if any address is internal.
"""

from __future__ import annotations

import asyncio
import ipaddress
import socket
from typing import Any, Awaitable, Callable, Iterable
from urllib.parse import urlsplit

DEFAULT_DENY: frozenset[str] = frozenset({
    "localhost",
    "127.0.0.1",
    "0.0.0.0",
    "::1",
    "[::1]",
    "169.254.169.254",
    "metadata.google.internal",
    "metadata",
})

_DENY_SUFFIXES = (".local", ".internal", ".localhost")

# Headers a workflow may not forward (session and client-identity leakage).
STRIP_OUTGOING_HEADERS: frozenset[str] = frozenset({
    "cookie",
    "cookie2",
    "origin",
    "referer",
    "host",
    "x-forwarded-for",
    "x-forwarded-host",
    "x-real-ip",
    "cf-connecting-ip",
    "sec-ch-ua",
    "sec-ch-ua-mobile",
    "sec-ch-ua-platform",
})


class HostPolicyViolation(ValueError):
    def __init__(self, host: str, reason: str):
        self.host = host
        self.reason = reason
        super().__init__(f"blocked host: {host} ({reason})")


def split_hosts(value: Any) -> list[str]:
    """Normalise a comma string or a list of strings into lowercase host names."""
    if not value:
        return []
    if isinstance(value, str):
        items: Iterable[Any] = value.split(",")
    elif isinstance(value, (list, tuple, set)):
        items = [part for item in value for part in str(item).split(",")]
    else:
        return []
    return [str(h).strip().lower() for h in items if str(h).strip()]


def _numeric_ipv4(host: str) -> str | None:
    # inet_aton applies the same lenient parsing as the resolver.
    try:
        return socket.inet_ntoa(socket.inet_aton(host))
    except (OSError, ValueError):
        return None


def _is_forbidden_ip(host: str) -> bool:
    try:
        addr = ipaddress.ip_address(host.strip("[]").split("%", 1)[0])
    except ValueError:
        return False
    return (
        addr.is_private
        or addr.is_loopback
        or addr.is_link_local
        or addr.is_unspecified
        or addr.is_reserved
        or addr.is_multicast
    )


def check_url(
    url: str,
    *,
    deny_hosts: Iterable[str] = (),
    allow_only: Iterable[str] = (),
) -> str:
    """Return the lowercase host of *url* or raise HostPolicyViolation."""
    try:
        parts = urlsplit(url)
    except ValueError as exc:
        raise HostPolicyViolation(url, f"invalid URL: {exc}") from exc
    if parts.scheme not in ("http", "https"):
        raise HostPolicyViolation(url, f"unsupported scheme '{parts.scheme or ''}'")
    host = (parts.hostname or "").lower().rstrip(".")
    if not host:
        raise HostPolicyViolation(url, "missing host")

    denied = set(DEFAULT_DENY) | set(split_hosts(list(deny_hosts)))
    if host in denied or f"[{host}]" in denied:
        raise HostPolicyViolation(host, "denied")
    if _is_forbidden_ip(host) or _is_forbidden_ip(_numeric_ipv4(host) or ""):
        raise HostPolicyViolation(host, "private or loopback address")
    if host.endswith(_DENY_SUFFIXES):
        raise HostPolicyViolation(host, "internal name")

    allowed = split_hosts(list(allow_only))
    if allowed and host not in allowed:
        raise HostPolicyViolation(host, "not in the allow list")
    return host


def strip_sensitive_headers(headers: dict[str, Any] | None) -> dict[str, str]:
    out: dict[str, str] = {}
    for key, value in (headers or {}).items():
        if str(key).lower() in STRIP_OUTGOING_HEADERS:
            continue
        out[str(key)] = str(value)
    return out


Resolver = Callable[[str], Awaitable[list[str]]]


async def resolve_host(host: str) -> list[str]:
    """Every address *host* resolves to; empty when resolution fails."""
    loop = asyncio.get_running_loop()
    try:
        infos = await loop.getaddrinfo(host, None, type=socket.SOCK_STREAM)
    except (socket.gaierror, UnicodeError):
        return []
    return sorted({info[4][0] for info in infos})


async def ensure_public_address(host: str, resolver: Resolver | None = None) -> None:
    """Raise HostPolicyViolation if *host* resolves to any internal address.

    Unresolvable names pass; the HTTP client reports those itself.
    """
    for address in await (resolver or resolve_host)(host):
        if _is_forbidden_ip(address):
            raise HostPolicyViolation(host, f"resolves to internal address {address}")
