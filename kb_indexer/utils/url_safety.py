from __future__ import annotations

import ipaddress
from urllib.parse import urlparse

from kb_indexer.exceptions import UnsafeUrlError

ALLOWED_SCHEMES = {"http", "https"}
BLOCKED_HOSTS = {"localhost", "localhost.localdomain", "ip6-localhost", "metadata.google.internal"}


def _is_blocked_ip(host: str) -> bool:
    try:
        ip_addr = ipaddress.ip_address(host)
    except ValueError:
        return False
    if isinstance(ip_addr, ipaddress.IPv6Address) and ip_addr.ipv4_mapped is not None:
        ip_addr = ip_addr.ipv4_mapped
    return (
        ip_addr.is_private
        or ip_addr.is_loopback
        or ip_addr.is_link_local
        or ip_addr.is_multicast
        or ip_addr.is_reserved
        or ip_addr.is_unspecified
    )


def validate_public_url(url: str) -> None:
    """
    Rejects URLs that would make the fetcher reach into private infrastructure.

    Only the literal host is inspected; hostnames are not resolved.
    """
    parsed = urlparse(url)
    if parsed.scheme.lower() not in ALLOWED_SCHEMES:
        raise UnsafeUrlError("Only HTTP and HTTPS URLs can be indexed")

    host = (parsed.hostname or "").lower()
    if not host:
        raise UnsafeUrlError("Invalid URL format")

    if host in BLOCKED_HOSTS or host.endswith(".localhost"):
        raise UnsafeUrlError("Localhost URLs are not allowed")

    if _is_blocked_ip(host):
        raise UnsafeUrlError("Private, loopback and metadata addresses are not allowed")
