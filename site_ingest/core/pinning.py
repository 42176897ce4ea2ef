"""
httpx transport that pins every connection to pre-validated IP addresses.

The request URL is rewritten to one of the addresses the hostname resolved to
at validation time, while the original hostname is kept for the Host header
and TLS SNI / certificate verification. Hosts that were never pinned are
refused, so a crawl cannot be steered to a fresh (possibly internal) address
by a later DNS answer.
"""
import logging
from typing import Dict, FrozenSet, Iterable, List, Optional

import httpx

from site_ingest.core.errors import BlockedHostError
from site_ingest.core.url_validator import BLOCKED_PORTS

logger = logging.getLogger(__name__)


def host_key(hostname: str) -> str:
    """The hostname in the form httpx puts in ``request.url.host`` (lowercase, IDNA)."""
    hostname = hostname.strip().lower().rstrip(".")
    if ":" in hostname:
        return hostname.strip("[]")
    return httpx.URL(f"http://{hostname}/").host


class PinnedTransport(httpx.AsyncBaseTransport):
    def __init__(
        self,
        pins: Optional[Dict[str, Iterable[str]]] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self._transport = transport or httpx.AsyncHTTPTransport(retries=0)
        self._pins: Dict[str, List[str]] = {}
        self._cursor: Dict[str, int] = {}
        for hostname, ips in (pins or {}).items():
            self.pin(hostname, ips)

    def pin(self, hostname: str, ips: Iterable[str]) -> None:
        addresses = sorted(set(ips))
        if not addresses:
            raise ValueError(f"Cannot pin {hostname} without any validated address")
        key = host_key(hostname)
        self._pins[key] = addresses
        self._cursor.setdefault(key, 0)
        logger.debug(f"Pinned {key} to {addresses}")

    def is_pinned(self, hostname: str) -> bool:
        return host_key(hostname) in self._pins

    def pinned_ips(self, hostname: str) -> FrozenSet[str]:
        return frozenset(self._pins.get(host_key(hostname), ()))

    def _next_ip(self, key: str) -> str:
        addresses = self._pins[key]
        position = self._cursor[key]
        self._cursor[key] = position + 1
        return addresses[position % len(addresses)]

    async def handle_async_request(self, request: httpx.Request) -> httpx.Response:
        hostname = request.url.host
        if hostname not in self._pins:
            raise BlockedHostError(f"Host {hostname} was not validated for this crawl")
        if request.url.port is not None and request.url.port in BLOCKED_PORTS:
            raise BlockedHostError(f"Port {request.url.port} is not allowed for security reasons.")

        ip = self._next_ip(hostname)
        pinned = httpx.Request(
            method=request.method,
            url=request.url.copy_with(host=f"[{ip}]" if ":" in ip else ip),
            headers=request.headers, # Carries the original Host header
            stream=request.stream,
            extensions={**request.extensions, "sni_hostname": hostname},
        )
        return await self._transport.handle_async_request(pinned)

    async def aclose(self) -> None:
        await self._transport.aclose()
