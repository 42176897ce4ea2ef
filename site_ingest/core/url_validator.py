"""
URL validation and SSRF protection.

A URL is accepted only if its scheme is http(s), its hostname is not on the
blocklist, and every address the hostname resolves to is publicly routable.
The resolved addresses are returned with the URL so the crawler can pin all
later connections to them (DNS rebinding protection).
"""
import asyncio
import ipaddress
import logging
import socket
from typing import Awaitable, Callable, List, Optional
from urllib.parse import parse_qsl, urlencode, urljoin, urlsplit, urlunsplit

from pydantic import BaseModel

from site_ingest.models.document import ValidatedUrl

logger = logging.getLogger(__name__)

ALLOWED_SCHEMES = {"http", "https"}

BLOCKED_HOSTNAMES = {
    "localhost",
    "localhost.localdomain",
    "ip6-localhost",
    "ip6-loopback",
    "metadata",
    "metadata.google.internal",
    "metadata.azure.com",
    "metadata.packet.net",
    "instance-data",
    "instance-data.ec2.internal",
}
BLOCKED_HOSTNAME_SUFFIXES = (".localhost", ".internal", ".local")

# Common internal service ports
BLOCKED_PORTS = {
    22,    # SSH
    23,    # Telnet
    25,    # SMTP
    53,    # DNS
    110,   # POP3
    143,   # IMAP
    993,   # IMAPS
    995,   # POP3S
    1433,  # SQL Server
    1521,  # Oracle
    2375,  # Docker API
    3306,  # MySQL
    3389,  # RDP
    5432,  # PostgreSQL
    5984,  # CouchDB
    6379,  # Redis
    8086,  # InfluxDB
    9200,  # Elasticsearch
    11211, # Memcached
    27017, # MongoDB
}

Resolver = Callable[[str], Awaitable[List[str]]]


class UrlValidationResult(BaseModel):
    valid: bool
    url: Optional[ValidatedUrl] = None
    error: Optional[str] = None


async def resolve_host(hostname: str) -> List[str]:
    """Resolve a hostname to all of its A and AAAA addresses without blocking the loop."""
    loop = asyncio.get_running_loop()
    infos = await loop.getaddrinfo(hostname, None, type=socket.SOCK_STREAM)
    addresses: List[str] = []
    for info in infos:
        address = info[4][0].split("%", 1)[0] # Drop IPv6 scope ids
        if address not in addresses:
            addresses.append(address)
    return addresses


def is_blocked_ip(ip_str: str) -> bool:
    """
    True if the address is anything other than a publicly routable unicast
    address: loopback, RFC 1918, link-local, CGNAT, multicast, reserved,
    unspecified, documentation ranges. Unparseable input counts as blocked.
    """
    try:
        ip = ipaddress.ip_address(ip_str)
    except ValueError:
        return True

    if isinstance(ip, ipaddress.IPv6Address):
        embedded = ip.ipv4_mapped or ip.sixtofour
        if embedded is not None and is_blocked_ip(str(embedded)):
            return True

    return (
        ip.is_loopback
        or ip.is_private
        or ip.is_link_local
        or ip.is_multicast
        or ip.is_reserved
        or ip.is_unspecified
        or not ip.is_global
    )


def is_blocked_hostname(hostname: str) -> bool:
    host = hostname.lower().rstrip(".")
    return host in BLOCKED_HOSTNAMES or host.endswith(BLOCKED_HOSTNAME_SUFFIXES)


def normalize_url(url: str, base: Optional[str] = None) -> Optional[str]:
    """
    Normalize a URL for deduplication: resolve against ``base``, lowercase the
    scheme and host, drop credentials, default ports and the fragment, sort the
    query parameters and strip trailing slashes except on the root path.
    Returns None for anything that is not an absolute URL with a host.
    """
    try:
        absolute = urljoin(base, url.strip()) if base else url.strip()
        parts = urlsplit(absolute)
        scheme = parts.scheme.lower()
        hostname = parts.hostname
        port = parts.port
    except ValueError:
        return None
    if not scheme or not hostname:
        return None

    netloc = f"[{hostname}]" if ":" in hostname else hostname
    if port and not ((scheme == "http" and port == 80) or (scheme == "https" and port == 443)):
        netloc = f"{netloc}:{port}"

    path = parts.path or "/"
    if len(path) > 1 and path.endswith("/"):
        path = path.rstrip("/") or "/"

    query = urlencode(sorted(parse_qsl(parts.query, keep_blank_values=True)))
    return urlunsplit((scheme, netloc, path, query, ""))


def _strip_www(hostname: str) -> str:
    hostname = hostname.lower()
    return hostname[4:] if hostname.startswith("www.") else hostname


def is_same_origin(url: str, root_url: str) -> bool:
    """Same hostname, treating ``www.example.com`` and ``example.com`` as equal."""
    try:
        host = urlsplit(url).hostname
        root_host = urlsplit(root_url).hostname
    except ValueError:
        return False
    if not host or not root_host:
        return False
    return _strip_www(host) == _strip_www(root_host)


def target_policy_error(url: str) -> Optional[str]:
    """Scheme and port checks that apply to every URL a crawl fetches, not just the seed."""
    try:
        parts = urlsplit(url)
        port = parts.port
    except ValueError:
        return "Invalid URL format"
    scheme = parts.scheme.lower()
    if scheme not in ALLOWED_SCHEMES:
        return f'Protocol "{scheme}:" is not allowed. Only HTTPS and HTTP are supported.'
    if port is not None and port in BLOCKED_PORTS:
        return f"Port {port} is not allowed for security reasons."
    return None


def _invalid(error: str) -> UrlValidationResult:
    return UrlValidationResult(valid=False, error=error)


async def validate_url(raw_url: str, resolver: Optional[Resolver] = None) -> UrlValidationResult:
    """
    Validate a candidate URL against the SSRF policy.

    Returns the normalized URL plus every address its hostname resolved to.
    A failed validation is terminal for the request: do not crawl.
    """
    resolver = resolver or resolve_host
    candidate = (raw_url or "").strip()

    try:
        parts = urlsplit(candidate)
        port = parts.port
    except ValueError:
        return _invalid("Invalid URL format")

    scheme = parts.scheme.lower()
    if not scheme:
        return _invalid("Invalid URL format")
    if scheme not in ALLOWED_SCHEMES:
        return _invalid(f'Protocol "{scheme}:" is not allowed. Only HTTPS and HTTP are supported.')

    hostname = (parts.hostname or "").rstrip(".")
    if not hostname:
        return _invalid("Invalid URL format")

    if is_blocked_hostname(hostname):
        logger.warning(f"SSRF protection blocked hostname: {hostname}")
        return _invalid("This hostname is not allowed for security reasons.")

    if port is not None and port in BLOCKED_PORTS:
        return _invalid(f"Port {port} is not allowed for security reasons.")

    try:
        ipaddress.ip_address(hostname)
        addresses = [hostname]
    except ValueError:
        try:
            addresses = await resolver(hostname)
        except (OSError, UnicodeError) as e:
            logger.info(f"DNS resolution failed for {hostname}: {e}")
            addresses = []

    if not addresses:
        return _invalid("Could not resolve hostname. Please check the URL.")

    blocked = [address for address in addresses if is_blocked_ip(address)]
    if blocked:
        logger.warning(f"SSRF protection blocked {candidate}: {hostname} resolves to {blocked}")
        return _invalid("This URL cannot be accessed for security reasons.")

    normalized = normalize_url(candidate)
    if normalized is None:
        return _invalid("Invalid URL format")

    return UrlValidationResult(
        valid=True,
        url=ValidatedUrl(url=normalized, hostname=hostname.lower(), resolved_ips=frozenset(addresses)),
    )
