import asyncio

import httpx
import pytest

from site_ingest.core.crawler import CrawlStats, describe_fetch_error, is_crawlable_link
from site_ingest.core.errors import BlockedHostError, CrawlBlockedError
from conftest import PUBLIC_IP, html_page

BASE = "https://example.com"


async def collect(crawler, seed, **kwargs):
    events = []
    pages = [page async for page in crawler.iter_pages(seed, events.append, **kwargs)]
    return pages, events


def event_types(events):
    return [e.type for e in events]


@pytest.mark.asyncio
async def test_breadth_first_same_origin_crawl(make_site, make_crawler, seed):
    site = make_site({
        "/": html_page("Home", ["/a", "/b", "https://other.com/x", "/logo.png", "/wp-admin/edit"]),
        "/a": html_page("A", ["/c", "/"]),
        "/b": html_page("B"),
        "/c": html_page("C"),
    })
    pages, events = await collect(make_crawler(site), seed)

    assert [p.url for p in pages] == [f"{BASE}/", f"{BASE}/a", f"{BASE}/b", f"{BASE}/c"]
    assert [p.depth for p in pages] == [0, 1, 1, 2]
    assert pages[0].title == "Home"
    assert "Home section 0" in pages[0].content
    assert pages[0].word_count > 10
    # Off-site, asset and admin links are never requested
    assert sorted(r.url.path for r in site.page_requests) == ["/", "/a", "/b", "/c"]
    assert event_types(events)[0] == "crawl_started"
    assert event_types(events).count("page_fetched") == 4


@pytest.mark.asyncio
async def test_stops_at_max_pages(make_site, make_crawler, seed):
    children = [f"/p{i}" for i in range(5)]
    pages_map = {"/": html_page("Home", children)}
    pages_map.update({path: html_page(path) for path in children})
    site = make_site(pages_map)

    stats = CrawlStats()
    pages, _ = await collect(make_crawler(site), seed, max_pages=3, stats=stats)

    assert len(pages) == 3
    assert len(site.page_requests) == 3
    assert stats.fetched == 3
    assert stats.pending == 0
    assert stats.queued == 3


@pytest.mark.asyncio
async def test_crawler_ceiling_caps_requested_max(make_site, make_crawler, seed):
    children = [f"/p{i}" for i in range(5)]
    pages_map = {"/": html_page("Home", children)}
    pages_map.update({path: html_page(path) for path in children})
    site = make_site(pages_map)

    pages, _ = await collect(make_crawler(site, max_pages=2), seed, max_pages=10)
    assert len(pages) == 2


@pytest.mark.asyncio
async def test_respects_max_depth(make_site, make_crawler, seed):
    site = make_site({
        "/": html_page("Home", ["/a"]),
        "/a": html_page("A", ["/deep"]),
        "/deep": html_page("Deep"),
    })
    pages, _ = await collect(make_crawler(site, max_depth=1), seed)
    assert [p.url for p in pages] == [f"{BASE}/", f"{BASE}/a"]


@pytest.mark.asyncio
async def test_every_request_uses_the_validated_address(make_site, make_crawler, seed):
    calls = []

    async def rebinding_resolver(hostname):
        # A second lookup would now point at an internal address
        calls.append(hostname)
        return ["10.0.0.1"]

    site = make_site({
        "/": html_page("Home", ["/a", "/b"]),
        "/a": html_page("A"),
        "/b": html_page("B"),
    })
    pages, _ = await collect(make_crawler(site, resolver=rebinding_resolver), seed)

    assert len(pages) == 3
    assert calls == []
    assert site.requests
    for request in site.requests:
        assert request.url.host == PUBLIC_IP
        assert request.headers["host"] == "example.com"


@pytest.mark.asyncio
async def test_non_html_and_missing_pages_do_not_stop_the_crawl(make_site, make_crawler, seed):
    site = make_site({
        "/": html_page("Home", ["/data", "/missing", "/ok"]),
        "/data": lambda request: httpx.Response(200, json={"a": 1}),
        "/ok": html_page("OK"),
    })
    pages, events = await collect(make_crawler(site), seed)

    assert [p.url for p in pages] == [f"{BASE}/", f"{BASE}/ok"]
    skipped = [e for e in events if e.type == "page_skipped"]
    errors = [e for e in events if e.type == "page_error"]
    assert len(skipped) == 1
    assert skipped[0].url == f"{BASE}/data"
    assert skipped[0].error.startswith("Non-HTML content: application/json")
    assert len(errors) == 1
    assert errors[0].url == f"{BASE}/missing"
    assert errors[0].error == "404 Not Found"
    assert events[-1].pages_skipped == 1
    assert events[-1].pages_failed == 1


@pytest.mark.asyncio
async def test_thin_page_is_skipped_but_its_links_are_followed(make_site, make_crawler, seed):
    site = make_site({
        "/": '<html><body><a href="/guide">Guide</a></body></html>',
        "/guide": html_page("Guide"),
    })
    pages, events = await collect(make_crawler(site), seed)

    assert [p.url for p in pages] == [f"{BASE}/guide"]
    skipped = [e for e in events if e.type == "page_skipped"]
    assert skipped[0].url == f"{BASE}/"
    assert skipped[0].error == "Too little content"


@pytest.mark.asyncio
async def test_oversized_page_is_skipped(make_site, make_crawler, seed):
    site = make_site({
        "/": html_page("Home", ["/big"]),
        "/big": html_page("Big", paragraphs=200),
    })
    pages, events = await collect(make_crawler(site, max_page_size=5000), seed)

    assert [p.url for p in pages] == [f"{BASE}/"]
    skipped = [e for e in events if e.type == "page_skipped"]
    assert skipped[0].url == f"{BASE}/big"
    assert "1MB" in skipped[0].error


@pytest.mark.asyncio
async def test_redirect_to_private_address_is_blocked(make_site, make_crawler, seed):
    async def resolver(hostname):
        return ["10.0.0.8"] if hostname == "intranet.example.org" else [PUBLIC_IP]

    site = make_site({
        "/": html_page("Home", ["/go", "/local"]),
        "/go": lambda request: httpx.Response(302, headers={"location": "http://intranet.example.org/admin"}),
        "/local": lambda request: httpx.Response(301, headers={"location": "http://localhost:8080/"}),
    })
    pages, events = await collect(make_crawler(site, resolver=resolver), seed)

    assert [p.url for p in pages] == [f"{BASE}/"]
    errors = {e.url: e.error for e in events if e.type == "page_error"}
    assert errors[f"{BASE}/go"].startswith("Blocked redirect")
    assert errors[f"{BASE}/local"].startswith("Blocked redirect")
    assert all(r.headers["host"] == "example.com" for r in site.requests)


@pytest.mark.asyncio
async def test_blocked_port_on_the_crawled_host_is_never_requested(make_site, make_crawler, seed):
    site = make_site({
        "/": html_page("Home", ["https://example.com:6379/x", "/hop"]),
        "/hop": lambda request: httpx.Response(302, headers={"location": "https://example.com:6379/y"}),
        "/x": html_page("Redis"),
        "/y": html_page("Redis"),
    })
    pages, events = await collect(make_crawler(site), seed)

    assert [p.url for p in pages] == [f"{BASE}/"]
    errors = {e.url: e.error for e in events if e.type == "page_error"}
    assert errors[f"{BASE}/hop"] == "Blocked redirect: Port 6379 is not allowed for security reasons."
    assert all(r.url.port != 6379 for r in site.requests)


@pytest.mark.asyncio
async def test_root_redirect_moves_origin(make_site, make_crawler, seed):
    def root(request):
        if request.headers["host"] == "example.com":
            return httpx.Response(301, headers={"location": "https://www.example.com/"})
        return httpx.Response(200, html=html_page("Home", ["/a"]))

    site = make_site({"/": root, "/a": html_page("A")})
    pages, _ = await collect(make_crawler(site), seed)

    assert [p.url for p in pages] == ["https://www.example.com/", "https://www.example.com/a"]
    # The new host was validated and pinned like the seed
    assert all(r.url.host == PUBLIC_IP for r in site.requests)


@pytest.mark.asyncio
async def test_redirect_off_site_is_skipped(make_site, make_crawler, seed):
    site = make_site({
        "/": html_page("Home", ["/away"]),
        "/away": lambda request: httpx.Response(302, headers={"location": "https://partner.com/landing"}),
        "/landing": html_page("Partner"),
    })
    pages, events = await collect(make_crawler(site), seed)

    assert [p.url for p in pages] == [f"{BASE}/"]
    skipped = [e for e in events if e.type == "page_skipped"]
    assert skipped[0].url == f"{BASE}/away"
    assert skipped[0].error == "Redirected off-site"


@pytest.mark.asyncio
async def test_redirect_to_visited_page_is_skipped(make_site, make_crawler, seed):
    site = make_site({
        "/": html_page("Home", ["/a", "/old-a"]),
        "/a": html_page("A"),
        "/old-a": lambda request: httpx.Response(301, headers={"location": "/a"}),
    })
    pages, events = await collect(make_crawler(site), seed)

    assert [p.url for p in pages] == [f"{BASE}/", f"{BASE}/a"]
    skipped = [e for e in events if e.type == "page_skipped"]
    assert skipped[0].error == "Duplicate of an already crawled page"


@pytest.mark.asyncio
async def test_redirect_loop_fails_page(make_site, make_crawler, seed):
    site = make_site({
        "/": html_page("Home", ["/loop"]),
        "/loop": lambda request: httpx.Response(302, headers={"location": "/loop"}),
    })
    pages, events = await collect(make_crawler(site, max_redirects=2), seed)

    assert len(pages) == 1
    errors = [e for e in events if e.type == "page_error"]
    assert errors[0].error == "Too many redirects"


@pytest.mark.asyncio
async def test_cancellation_stops_before_next_fetch(make_site, make_crawler, seed):
    site = make_site({
        "/": html_page("Home", ["/a", "/b"]),
        "/a": html_page("A"),
        "/b": html_page("B"),
    })
    signal = asyncio.Event()
    pages = []
    async for page in make_crawler(site).iter_pages(seed, signal=signal):
        pages.append(page)
        signal.set()

    assert len(pages) == 1
    assert [r.url.path for r in site.page_requests] == ["/"]


@pytest.mark.asyncio
async def test_robots_disallow_refuses_crawl(make_site, make_crawler, seed):
    site = make_site({"/": html_page("Home")}, robots="User-agent: *\nDisallow: /\n")
    crawler = make_crawler(site)

    with pytest.raises(CrawlBlockedError):
        await collect(crawler, seed)
    assert site.page_requests == []

    events = []
    result = await crawler.crawl_site(seed, events.append)
    assert result.pages == []
    assert event_types(events) == ["crawl_error"]
    assert "robots.txt" in events[0].error


@pytest.mark.asyncio
async def test_counters_never_decrease(make_site, make_crawler, seed):
    site = make_site({
        "/": html_page("Home", ["/a", "/b", "/c", "/missing"]),
        "/a": html_page("A", ["/d", "/e"]),
        "/b": '<html><body><a href="/f">f</a></body></html>',
        "/c": html_page("C"),
        "/d": html_page("D"),
        "/e": html_page("E"),
        "/f": html_page("F"),
    })
    _, events = await collect(make_crawler(site), seed, max_pages=4)

    totals = [e.pages_total for e in events]
    processed = [e.pages_processed for e in events]
    assert totals == sorted(totals)
    assert processed == sorted(processed)
    for event in events:
        assert event.pages_processed + event.pages_skipped + event.pages_failed <= event.pages_total


@pytest.mark.asyncio
async def test_crawl_site_reports_single_completion(make_site, make_crawler, seed):
    site = make_site({
        "/": html_page("Home", ["/a", "/missing"]),
        "/a": html_page("A"),
    })
    events = []
    result = await make_crawler(site).crawl_site(seed, events.append)

    assert [p.url for p in result.pages] == [f"{BASE}/", f"{BASE}/a"]
    assert result.failed_pages == 1
    assert result.root_url == f"{BASE}/"
    terminal = [e for e in events if e.type in ("crawl_complete", "crawl_error")]
    assert len(terminal) == 1
    assert events[-1].type == "crawl_complete"
    assert events[-1].pages_processed == 2
    assert events[-1].pages_failed == 1
    assert events[-1].pages_total == 3


@pytest.mark.parametrize("url, expected", [
    ("https://example.com/docs", True),
    ("https://www.example.com/docs", True),
    ("https://other.com/docs", False),
    ("https://example.com/brochure.PDF", False),
    ("https://example.com/wp-admin/options", False),
    ("https://example.com/v1.2/guide", True),
    ("https://example.com:8443/docs", True),
    ("https://example.com:6379/x", False),
    ("https://example.com:22/", False),
    ("ftp://example.com/docs", False),
])
def test_is_crawlable_link(url, expected):
    assert is_crawlable_link(url, "https://example.com/") is expected


def test_describe_fetch_error():
    request = httpx.Request("GET", "https://example.com/")
    assert describe_fetch_error(BlockedHostError("x")) == "Blocked host"
    assert describe_fetch_error(httpx.ReadTimeout("slow", request=request)) == "Timed out"
    assert describe_fetch_error(asyncio.TimeoutError()) == "Timed out"
    assert describe_fetch_error(httpx.ConnectError("[SSL: CERTIFICATE_VERIFY_FAILED]", request=request)) == "SSL certificate error"
    assert describe_fetch_error(httpx.ConnectError("refused", request=request)) == "Connection failed"
