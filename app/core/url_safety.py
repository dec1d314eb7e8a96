"""Public-URL safety check.

Rejects destinations pointing at private, loopback, link-local or cloud
metadata targets so a redirect can never be aimed at internal services.
"""

import ipaddress
import re
import socket
from typing import Optional, Union
from urllib.parse import urlsplit

ALLOWED_SCHEMES = ("http", "https")

BLOCKED_HOST_SUFFIXES = (".local", ".internal")

BLOCKED_HOST_PATTERNS = (
    "metadata",
    "metadata.google.internal",
    "metadata.google",
    "kubernetes.default",
)

_MAPPED_IPV4 = re.compile(r"^(?:::ffff:|0{1,4}(?::0{1,4}){4}:ffff:)(\d{1,3}(?:\.\d{1,3}){3})$", re.IGNORECASE)

# Hosts browsers read as IPv4 numbers: 2130706433, 0x7f000001, 127.1, 0177.0.0.1
_NUMERIC_HOST = re.compile(r"^(?:0x[0-9a-f]+|\d+)(?:\.(?:0x[0-9a-f]+|\d+)){0,3}$", re.IGNORECASE)


def _parse_ip(host: str) -> Optional[Union[ipaddress.IPv4Address, ipaddress.IPv6Address]]:
    try:
        return ipaddress.ip_address(host)
    except ValueError:
        return None


def _parse_numeric_ipv4(host: str) -> Optional[ipaddress.IPv4Address]:
    """Decode decimal, hex, octal and short dotted IPv4 forms."""
    try:
        return ipaddress.IPv4Address(socket.inet_aton(host))
    except OSError:
        return None


def is_private_ip(host: str) -> bool:
    """
    Check whether ``host`` is an IP literal in a non-public range.

    Covers RFC 1918, loopback, link-local (including 169.254.169.254),
    unspecified, unique-local IPv6 and IPv4-mapped IPv6 forms of those.
    Numeric hosts such as ``2130706433`` or ``127.1`` are decoded the way a
    browser would; a numeric host that decodes to no address counts as private.
    """
    clean = host.strip("[]").lower()

    mapped = _MAPPED_IPV4.match(clean)
    if mapped:
        clean = mapped.group(1)

    ip = _parse_ip(clean)
    if ip is None:
        if not _NUMERIC_HOST.match(clean):
            return False
        ip = _parse_numeric_ipv4(clean)
        if ip is None:
            return True

    if isinstance(ip, ipaddress.IPv6Address) and ip.ipv4_mapped is not None:
        ip = ip.ipv4_mapped

    return (
        ip.is_private
        or ip.is_loopback
        or ip.is_link_local
        or ip.is_unspecified
        or ip.is_reserved
        or ip.is_multicast
    )


def is_private_or_internal_host(hostname: str) -> bool:
    """Check whether ``hostname`` names an internal network target."""
    host = hostname.strip("[]").lower().rstrip(".")

    if host == "localhost" or host.endswith(".localhost"):
        return True

    if is_private_ip(host):
        return True

    if host.endswith(BLOCKED_HOST_SUFFIXES):
        return True

    return any(pattern in host for pattern in BLOCKED_HOST_PATTERNS)


def is_safe_url(url: object) -> bool:
    """
    Return True when ``url`` is an http(s) URL with a public host.

    Never raises; anything unparsable is unsafe.
    """
    if not url or not isinstance(url, str):
        return False

    try:
        parts = urlsplit(url.strip())
        hostname = parts.hostname
    except ValueError:
        return False

    if parts.scheme.lower() not in ALLOWED_SCHEMES or not hostname:
        return False

    return not is_private_or_internal_host(hostname)
