import re
import time
import httpx
import asyncio
import logging
from collections import deque
from dataclasses import dataclass
from urllib.parse import urljoin, urlsplit
from typing import AsyncIterator, Callable, Deque, Iterable, List, Optional, Set, Tuple

from site_ingest.config import settings
from site_ingest.core.content import ExtractedContent, discover_links, extract_content
from site_ingest.core.errors import BlockedHostError, CrawlBlockedError
from site_ingest.core.pinning import PinnedTransport
from site_ingest.core.robots import check_robots_txt
from site_ingest.core.url_validator import Resolver, is_same_origin, normalize_url, target_policy_error, validate_url
from site_ingest.models.document import CrawlPage, CrawlResult, ValidatedUrl
from site_ingest.models.events import (
    CrawlCompleteEvent,
    CrawlErrorEvent,
    CrawlStartedEvent,
    PageErrorEvent,
    PageFetchedEvent,
    PageSkippedEvent,
    ProgressCounters,
)

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[ProgressCounters], None]

NON_HTML_EXTENSIONS = {
    "pdf", "jpg", "jpeg", "png", "gif", "svg", "webp", "ico",
    "css", "js", "json", "xml", "rss", "atom",
    "zip", "tar", "gz", "rar", "7z",
    "mp3", "mp4", "avi", "mov", "wmv", "flv",
    "doc", "docx", "xls", "xlsx", "ppt", "pptx",
    "woff", "woff2", "ttf", "eot",
}
SKIPPED_PATHS = re.compile(r"/(wp-admin|wp-includes|cgi-bin|\.well-known)/")
ALLOWED_CONTENT_TYPES = ("text/html", "application/xhtml+xml")


@dataclass
class CrawlStats:
    """
    Running totals of one crawl. ``pending`` is the queued work still inside
    the page budget; ``queued`` counts every discovered URL not yet visited.
    """
    fetched: int = 0
    skipped: int = 0
    failed: int = 0
    pending: int = 0
    queued: int = 0

    @property
    def total(self) -> int:
        return self.fetched + self.skipped + self.failed + self.pending


class PageSkipped(Exception):
    """The page is not crawlable content (wrong type, too large, too little text)."""


class PageFailed(Exception):
    """The page could not be fetched."""


def describe_fetch_error(exc: BaseException) -> str:
    """Short, user-facing description of a fetch failure."""
    if isinstance(exc, (PageFailed, PageSkipped)):
        return str(exc)
    if isinstance(exc, BlockedHostError):
        return "Blocked host"
    if isinstance(exc, (httpx.TimeoutException, asyncio.TimeoutError)):
        return "Timed out"
    if isinstance(exc, httpx.ConnectError):
        message = str(exc).upper()
        if "CERTIFICATE" in message or "SSL" in message or "TLS" in message:
            return "SSL certificate error"
        return "Connection failed"
    if isinstance(exc, httpx.HTTPError):
        return str(exc) or "Fetch failed"
    return str(exc) or exc.__class__.__name__


def is_crawlable_link(url: str, origin: str) -> bool:
    if not is_same_origin(url, origin):
        return False
    if target_policy_error(url):
        return False
    path = urlsplit(url).path
    last_segment = path.rsplit("/", 1)[-1]
    if "." in last_segment and last_segment.rsplit(".", 1)[-1].lower() in NON_HTML_EXTENSIONS:
        return False
    if SKIPPED_PATHS.search(path):
        return False
    return True


def _parse_page(html: str, url: str, origin: str, min_words: int, follow_links: bool) -> Tuple[Optional[ExtractedContent], List[str]]:
    extracted = extract_content(html, url, min_words=min_words)
    links = []
    if follow_links:
        links = [link for link in discover_links(html, url) if is_crawlable_link(link, origin)]
    return extracted, links


class SiteCrawler:
    """
    Breadth-first, same-origin crawler. Every connection is pinned to the
    addresses validated for the seed URL; hosts reached through redirects
    are validated once and pinned the same way.
    """
    def __init__(
        self,
        user_agent: str = settings.CRAWLER_USER_AGENT,
        robots_agent: str = settings.CRAWL_ROBOTS_AGENT,
        max_pages: int = settings.CRAWL_MAX_PAGES,
        max_depth: int = settings.CRAWL_MAX_DEPTH,
        max_page_size: int = settings.CRAWL_MAX_PAGE_SIZE,
        fetch_timeout: float = settings.CRAWL_FETCH_TIMEOUT,
        overall_timeout: float = settings.CRAWL_OVERALL_TIMEOUT,
        throttle_seconds: float = settings.CRAWL_THROTTLE_SECONDS,
        max_redirects: int = settings.CRAWL_MAX_REDIRECTS,
        min_content_words: int = settings.CRAWL_MIN_CONTENT_WORDS,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        resolver: Optional[Resolver] = None,
    ):
        self.user_agent = user_agent
        self.robots_agent = robots_agent
        self.max_pages = max_pages
        self.max_depth = max_depth
        self.max_page_size = max_page_size
        self.fetch_timeout = fetch_timeout
        self.overall_timeout = overall_timeout
        self.throttle_seconds = throttle_seconds
        self.max_redirects = max_redirects
        self.min_content_words = min_content_words
        self._transport = transport
        self._resolver = resolver

    def _build_client(self, transport: PinnedTransport) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            transport=transport,
            headers={
                "User-Agent": self.user_agent,
                "Accept": "text/html,application/xhtml+xml,application/xml;q=0.9,*/*;q=0.8",
                "Accept-Language": "en-US,en;q=0.9",
                "Cache-Control": "no-cache",
            },
            timeout=self.fetch_timeout,
            follow_redirects=False,
        )

    async def _pin_redirect_target(self, transport: PinnedTransport, url: str) -> None:
        result = await validate_url(url, resolver=self._resolver)
        if not result.valid or result.url is None:
            raise PageFailed(f"Blocked redirect: {result.error}")
        transport.pin(result.url.hostname, result.url.resolved_ips)

    async def _read_limited(self, response: httpx.Response) -> Optional[bytes]:
        body = bytearray()
        async for chunk in response.aiter_bytes():
            body.extend(chunk)
            if len(body) > self.max_page_size:
                return None
        return bytes(body)

    async def _fetch_page(self, client: httpx.AsyncClient, transport: PinnedTransport, url: str) -> Tuple[str, int, str]:
        """
        Fetches one page, following redirects by hand so that each new host
        passes SSRF validation before it is contacted.
        Returns (final url, status code, html).
        """
        current = url
        for _ in range(self.max_redirects + 1):
            if not transport.is_pinned(urlsplit(current).hostname or ""):
                await self._pin_redirect_target(transport, current)

            async with client.stream("GET", current) as response:
                if response.is_redirect:
                    target = urljoin(current, response.headers["location"])
                    if urlsplit(target).scheme not in ("http", "https"):
                        raise PageFailed("Blocked redirect: unsupported protocol")
                    error = target_policy_error(target)
                    if error:
                        raise PageFailed(f"Blocked redirect: {error}")
                    logger.debug(f"Redirect {response.status_code}: {current} -> {target}")
                    current = target
                    continue

                if not response.is_success:
                    raise PageFailed(f"{response.status_code} {response.reason_phrase}".strip())

                content_type = response.headers.get("content-type", "")
                if not any(t in content_type.lower() for t in ALLOWED_CONTENT_TYPES):
                    raise PageSkipped(f"Non-HTML content: {content_type or 'unknown'}")

                content_length = response.headers.get("content-length", "")
                if content_length.isdigit() and int(content_length) > self.max_page_size:
                    raise PageSkipped("Page too large (>1MB)")

                body = await self._read_limited(response)
                if body is None:
                    raise PageSkipped("Page exceeds 1MB")

                return current, response.status_code, body.decode(response.encoding or "utf-8", errors="replace")

        raise PageFailed("Too many redirects")

    async def _throttle(self, last_fetch: Optional[float]) -> None:
        if last_fetch is None or self.throttle_seconds <= 0:
            return
        elapsed = time.monotonic() - last_fetch
        if elapsed < self.throttle_seconds:
            await asyncio.sleep(self.throttle_seconds - elapsed)

    async def iter_pages(
        self,
        seed: ValidatedUrl,
        on_progress: Optional[ProgressCallback] = None,
        max_pages: Optional[int] = None,
        signal: Optional[asyncio.Event] = None,
        resolved_ips: Optional[Iterable[str]] = None,
        stats: Optional[CrawlStats] = None,
        job_id: str = "-",
    ) -> AsyncIterator[CrawlPage]:
        """
        Crawls ``seed`` breadth-first and yields each page with usable content
        as soon as it has been fetched and parsed.

        Progress events are passed to ``on_progress``; ``crawl_complete`` is
        left to the caller. Raises CrawlBlockedError when robots.txt
        disallows the seed path. Stops early when ``signal`` is set or the
        overall timeout elapses.
        """
        limit = min(max_pages, self.max_pages) if max_pages else self.max_pages
        stats = stats if stats is not None else CrawlStats()

        def emit(event: ProgressCounters) -> None:
            if on_progress is not None:
                on_progress(event)

        def counters() -> dict:
            return {
                "pages_processed": stats.fetched,
                "pages_total": stats.total,
                "pages_skipped": stats.skipped,
                "pages_failed": stats.failed,
            }

        if limit <= 0:
            return

        ips = set(resolved_ips if resolved_ips is not None else seed.resolved_ips)
        transport = PinnedTransport({seed.hostname: ips}, transport=self._transport)
        async with self._build_client(transport) as client:
            seed_path = urlsplit(seed.url).path or "/"
            if not await check_robots_txt(client, seed.url, seed_path, agent=self.robots_agent):
                raise CrawlBlockedError("robots.txt disallows crawling this site.")

            queue: Deque[Tuple[str, int]] = deque([(seed.url, 0)])
            visited: Set[str] = {seed.url}
            origin = seed.url
            started = time.monotonic()
            last_fetch: Optional[float] = None

            def update_pending() -> None:
                stats.queued = len(queue)
                stats.pending = min(stats.queued, limit - stats.fetched)

            update_pending()
            logger.info(f"Job {job_id}: Starting crawl of {seed.url} (max_pages: {limit}, max_depth: {self.max_depth})")
            emit(CrawlStartedEvent(url=seed.url, **counters()))

            while queue and stats.fetched < limit:
                if signal is not None and signal.is_set():
                    logger.info(f"Job {job_id}: Crawl cancelled after {stats.fetched} pages.")
                    break
                remaining_time = self.overall_timeout - (time.monotonic() - started)
                if remaining_time <= 0:
                    logger.warning(f"Job {job_id}: Overall crawl timeout reached after {stats.fetched} pages.")
                    break

                current_url, depth = queue.popleft()
                await self._throttle(last_fetch)

                try:
                    final_url, status_code, html = await asyncio.wait_for(
                        self._fetch_page(client, transport, current_url),
                        timeout=min(self.fetch_timeout, remaining_time),
                    )
                    if depth == 0 and stats.fetched == 0:
                        if urlsplit(final_url).hostname != urlsplit(origin).hostname:
                            logger.info(f"Job {job_id}: Root redirected, effective origin is now {final_url}")
                        origin = final_url
                    elif not is_same_origin(final_url, origin):
                        raise PageSkipped("Redirected off-site")
                    final_key = normalize_url(final_url) or final_url
                    if final_key != current_url and final_key in visited:
                        raise PageSkipped("Duplicate of an already crawled page")
                except PageSkipped as e:
                    stats.skipped += 1
                    update_pending()
                    logger.info(f"Job {job_id}: Skipped {current_url}: {e}")
                    emit(PageSkippedEvent(url=current_url, error=str(e), **counters()))
                    continue
                except (PageFailed, BlockedHostError, httpx.HTTPError, httpx.InvalidURL,
                        httpx.StreamError, asyncio.TimeoutError) as e:
                    stats.failed += 1
                    update_pending()
                    logger.warning(f"Job {job_id}: Failed to fetch {current_url}: {e!r}")
                    emit(PageErrorEvent(url=current_url, error=describe_fetch_error(e), **counters()))
                    continue
                finally:
                    last_fetch = time.monotonic()

                visited.add(final_key)
                extracted, links = await asyncio.to_thread(
                    _parse_page, html, final_url, origin, self.min_content_words, depth < self.max_depth
                )

                for link in links:
                    if len(queue) >= limit * 2:
                        break
                    normalized = normalize_url(link)
                    if normalized and normalized not in visited:
                        visited.add(normalized)
                        queue.append((normalized, depth + 1))

                if extracted is None:
                    stats.skipped += 1
                    update_pending()
                    emit(PageSkippedEvent(url=final_url, error="Too little content", **counters()))
                    continue

                stats.fetched += 1
                update_pending()
                logger.info(f"Job {job_id}: Fetched {final_url} (depth {depth}, {stats.fetched}/{limit})")
                emit(PageFetchedEvent(url=final_url, title=extracted.title, **counters()))

                yield CrawlPage(
                    url=final_url,
                    title=extracted.title,
                    content=extracted.content,
                    word_count=extracted.word_count,
                    depth=depth,
                    status_code=status_code,
                )

            update_pending()
            logger.info(
                f"Job {job_id}: Crawl finished. fetched={stats.fetched} skipped={stats.skipped} "
                f"failed={stats.failed} pending={stats.pending}"
            )

    async def crawl_site(
        self,
        seed: ValidatedUrl,
        on_progress: ProgressCallback,
        max_pages: Optional[int] = None,
        signal: Optional[asyncio.Event] = None,
        resolved_ips: Optional[Iterable[str]] = None,
        job_id: str = "-",
    ) -> CrawlResult:
        """
        Collects the whole crawl and reports completion: emits exactly one
        terminal event (``crawl_complete``, or ``crawl_error`` when robots.txt
        refuses the crawl).
        """
        stats = CrawlStats()
        pages: List[CrawlPage] = []
        try:
            async for page in self.iter_pages(
                seed, on_progress, max_pages=max_pages, signal=signal,
                resolved_ips=resolved_ips, stats=stats, job_id=job_id,
            ):
                pages.append(page)
        except CrawlBlockedError as e:
            on_progress(CrawlErrorEvent(error=str(e)))
            return CrawlResult(root_url=seed.url, hostname=seed.hostname)

        on_progress(
            CrawlCompleteEvent(
                pages_processed=len(pages),
                pages_total=len(pages) + stats.skipped + stats.failed,
                pages_skipped=stats.skipped,
                pages_failed=stats.failed,
            )
        )
        return CrawlResult(
            pages=pages,
            skipped_pages=stats.skipped,
            failed_pages=stats.failed,
            root_url=seed.url,
            hostname=seed.hostname,
        )
