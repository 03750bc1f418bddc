#!/usr/bin/env python3
"""
URL admission control for outbound requests.

Every URL supplied by a caller must pass validate_url() before the proxy is
allowed to open a connection to it. The policy is a fixed set of tables:
allowed schemes, denylisted hostnames (cloud metadata endpoints and
localhost), private/link-local address ranges, and ports of common internal
services.

Hosts are checked in the IDNA/UTS-46 form aiohttp connects to, so full-width
or otherwise compatibility-mapped spellings of a blocked name are caught.

Hostnames are never resolved here. A public name that resolves to a private
address at fetch time (DNS rebinding) is not caught by this gate.
"""

from dataclasses import dataclass
from ipaddress import IPv4Address, IPv6Address, ip_address, ip_network
from typing import Optional, Union
from urllib.parse import urlsplit

from yarl import URL

from config import get_logger
from errors import InvalidUrlError, SsrfBlockedError
from telemetry import trace_span

logger = get_logger("security")

IPAddress = Union[IPv4Address, IPv6Address]

ALLOWED_SCHEMES = frozenset({"http", "https"})

# Cloud metadata endpoints are the critical entries here
BLOCKED_HOSTS = frozenset({
    "localhost",
    "metadata.google.internal",
    "169.254.169.254",
    "metadata.azure.com",
})

BLOCKED_NETWORKS = tuple(ip_network(cidr) for cidr in (
    "127.0.0.0/8",     # loopback
    "0.0.0.0/8",       # current network
    "10.0.0.0/8",      # private class A
    "172.16.0.0/12",   # private class B
    "192.168.0.0/16",  # private class C
    "169.254.0.0/16",  # link-local
    "::1/128",         # IPv6 loopback
    "fc00::/7",        # IPv6 unique local
    "fe80::/10",       # IPv6 link-local
))

BLOCKED_PORTS = frozenset({
    22,     # SSH
    23,     # Telnet
    25,     # SMTP
    53,     # DNS
    135,    # Windows RPC
    137,    # NetBIOS
    138,    # NetBIOS
    139,    # NetBIOS
    445,    # SMB
    3306,   # MySQL
    3389,   # RDP
    5432,   # PostgreSQL
    6379,   # Redis
    27017,  # MongoDB
    27018,  # MongoDB
})


@dataclass(frozen=True)
class ValidatedUrl:
    """A URL that has cleared the admission policy."""

    url: str
    scheme: str
    host: str
    port: Optional[int] = None
    ip: Optional[IPAddress] = None

    def __str__(self) -> str:
        return self.url


def _parse_ipv4_part(part: str) -> Optional[int]:
    """Parse one IPv4 component the way browsers do (decimal, 0x-hex, 0-octal)."""
    if not part:
        return None
    try:
        if part[:2].lower() == "0x":
            return int(part[2:], 16) if len(part) > 2 else 0
        if len(part) > 1 and part[0] == "0":
            return int(part[1:], 8)
        if part.isdigit():
            return int(part, 10)
    except ValueError:
        return None
    return None


def _parse_ipv4_host(host: str) -> Optional[IPv4Address]:
    """Interpret shorthand IPv4 hosts such as ``2130706433``, ``0x7f.1`` or ``127.1``.

    Returns None when the host is not numeric in WHATWG terms, in which case
    it is treated as a domain name.
    """
    parts = host.split(".")
    if parts and parts[-1] == "":
        parts = parts[:-1]
    if not parts or len(parts) > 4:
        return None
    numbers = []
    for part in parts:
        value = _parse_ipv4_part(part)
        if value is None:
            return None
        numbers.append(value)
    if any(n > 255 for n in numbers[:-1]):
        return None
    if numbers[-1] >= 256 ** (5 - len(numbers)):
        return None
    value = numbers[-1]
    for index, number in enumerate(numbers[:-1]):
        value += number * 256 ** (3 - index)
    return IPv4Address(value)


def parse_host_ip(host: str) -> Optional[IPAddress]:
    """Return the literal IP address a host string denotes, or None for domain names."""
    try:
        return ip_address(host)
    except ValueError:
        pass
    if ":" in host:
        return None
    return _parse_ipv4_host(host)


def connect_host(url: str) -> Optional[str]:
    """Return the ASCII host the HTTP client will connect to, or None if it has none.

    Raises:
        ValueError: the host cannot be IDNA-encoded
    """
    return URL(url).raw_host


def is_blocked_host(hostname: str) -> bool:
    """Check a hostname against the denylist (case-insensitive)."""
    return hostname.lower().rstrip(".") in BLOCKED_HOSTS


def is_blocked_ip(ip: IPAddress) -> bool:
    """Check whether an address falls inside any blocked range."""
    if isinstance(ip, IPv6Address) and ip.ipv4_mapped is not None:
        ip = ip.ipv4_mapped
    return any(ip.version == network.version and ip in network for network in BLOCKED_NETWORKS)


def is_blocked_port(port: int) -> bool:
    """Check whether an explicit port belongs to an internal service."""
    return port in BLOCKED_PORTS


@trace_span(
    "validate_url",
    tracer_name="security",
    attr_from_args=lambda candidate: {"url.length": len(candidate) if isinstance(candidate, str) else 0},
)
def validate_url(candidate: str) -> ValidatedUrl:
    """Admit a caller-supplied URL or raise a classified error.

    Checks, in order: absolute URL syntax, http/https scheme, hostname
    denylist, literal IP ranges and explicit port. Blocked requests are
    logged as security events.

    Raises:
        InvalidUrlError: malformed URL or disallowed scheme
        SsrfBlockedError: denylisted host, private IP or internal port
    """
    if not isinstance(candidate, str) or not candidate.strip():
        raise InvalidUrlError()

    url = candidate.strip()
    try:
        parts = urlsplit(url)
        port = parts.port
    except ValueError:
        # urlsplit rejects out-of-range or non-numeric ports and bad IPv6 brackets
        raise InvalidUrlError()

    scheme = parts.scheme.lower()
    if scheme not in ALLOWED_SCHEMES:
        raise InvalidUrlError()

    try:
        hostname = connect_host(url)
    except ValueError:
        # Includes UnicodeError from hosts IDNA refuses to encode
        raise InvalidUrlError()
    if not hostname:
        raise InvalidUrlError()
    hostname = hostname.lower()

    if is_blocked_host(hostname):
        logger.warning(f"Blocked SSRF attempt: hostname {hostname}")
        raise SsrfBlockedError()

    ip = parse_host_ip(hostname)
    if ip is not None and is_blocked_ip(ip):
        logger.warning(f"Blocked SSRF attempt: private IP {ip}")
        raise SsrfBlockedError()

    if port is not None and is_blocked_port(port):
        logger.warning(f"Blocked SSRF attempt: port {port}")
        raise SsrfBlockedError()

    return ValidatedUrl(url=url, scheme=scheme, host=hostname, port=port, ip=ip)
