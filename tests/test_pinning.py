import httpx
import pytest

from site_ingest.core.errors import BlockedHostError
from site_ingest.core.pinning import PinnedTransport, host_key


def recording_transport(seen):
    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(200, text="ok")
    return httpx.MockTransport(handler)


@pytest.mark.asyncio
async def test_requests_connect_to_pinned_ip_with_original_host_header():
    seen = []
    transport = PinnedTransport({"example.com": ["93.184.216.34"]}, transport=recording_transport(seen))
    async with httpx.AsyncClient(transport=transport) as client:
        response = await client.get("https://example.com/docs?page=2")

    assert response.status_code == 200
    assert len(seen) == 1
    sent = seen[0]
    assert sent.url.host == "93.184.216.34"
    assert sent.url.path == "/docs"
    assert sent.url.params["page"] == "2"
    assert sent.headers["host"] == "example.com"
    assert sent.extensions["sni_hostname"] == "example.com"
    # The response still reports the URL the caller asked for
    assert response.url.host == "example.com"


@pytest.mark.asyncio
async def test_round_robin_over_validated_addresses():
    seen = []
    transport = PinnedTransport(
        {"example.com": ["93.184.216.35", "93.184.216.34"]}, transport=recording_transport(seen)
    )
    async with httpx.AsyncClient(transport=transport) as client:
        for _ in range(4):
            await client.get("https://example.com/")

    assert [r.url.host for r in seen] == ["93.184.216.34", "93.184.216.35", "93.184.216.34", "93.184.216.35"]


@pytest.mark.asyncio
async def test_unpinned_host_is_refused():
    seen = []
    transport = PinnedTransport({"example.com": ["93.184.216.34"]}, transport=recording_transport(seen))
    async with httpx.AsyncClient(transport=transport) as client:
        with pytest.raises(BlockedHostError):
            await client.get("https://internal.example.org/")
    assert seen == []


@pytest.mark.asyncio
async def test_pin_adds_new_host():
    seen = []
    transport = PinnedTransport(transport=recording_transport(seen))
    assert not transport.is_pinned("www.example.com")
    transport.pin("WWW.Example.com", {"93.184.216.34"})
    assert transport.is_pinned("www.example.com")
    assert transport.pinned_ips("www.example.com") == frozenset({"93.184.216.34"})

    async with httpx.AsyncClient(transport=transport) as client:
        await client.get("http://www.example.com/")
    assert seen[0].url.host == "93.184.216.34"
    assert seen[0].headers["host"] == "www.example.com"


def test_pin_requires_addresses():
    transport = PinnedTransport(transport=recording_transport([]))
    with pytest.raises(ValueError):
        transport.pin("example.com", [])


def test_host_key_normalizes_case_and_trailing_dot():
    assert host_key("Example.COM.") == "example.com"
    assert host_key("[2606:4700::1]") == "2606:4700::1"


@pytest.mark.asyncio
async def test_blocked_port_is_refused_on_a_pinned_host():
    seen = []
    transport = PinnedTransport({"example.com": ["93.184.216.34"]}, transport=recording_transport(seen))
    async with httpx.AsyncClient(transport=transport) as client:
        with pytest.raises(BlockedHostError, match="Port 6379"):
            await client.get("https://example.com:6379/")
    assert seen == []
