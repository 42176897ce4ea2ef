import functools
from typing import Callable, Dict, List, Optional, Union

import httpx
import pytest

from site_ingest.core.crawler import SiteCrawler
from site_ingest.core.embedder import BaseEmbedder
from site_ingest.core.errors import EmbeddingError
from site_ingest.core.orchestrator import IngestionOrchestrator
from site_ingest.core.url_validator import validate_url
from site_ingest.models.document import ValidatedUrl
from site_ingest.services.billing import StaticBillingClient
from site_ingest.services.document_store import InMemoryDocumentStore
from site_ingest.services.rate_limiter import InFlightTracker, InMemoryRateLimiter

PUBLIC_IP = "93.184.216.34"

FILLER = (
    "Our team builds reliable tools for people who care about their data. "
    "This page explains how the product works and what you can expect from it. "
)

PageSpec = Union[str, Callable[[httpx.Request], httpx.Response]]


def html_page(title: str, links: Optional[List[str]] = None, paragraphs: int = 2) -> str:
    anchors = "".join(f'<li><a href="{href}">{href}</a></li>' for href in (links or []))
    body = "".join(f"<p>{title} section {i}. {FILLER}</p>" for i in range(paragraphs))
    return (
        f"<html><head><title>{title}</title></head>"
        f"<body><main><h1>{title}</h1>{body}</main><ul>{anchors}</ul></body></html>"
    )


class FakeSite:
    """
    Serves ``pages`` (path -> HTML string or handler) through httpx.MockTransport
    and records every request it receives.
    """

    def __init__(self, pages: Dict[str, PageSpec], robots: Optional[str] = None):
        self.pages = pages
        self.robots = robots
        self.requests: List[httpx.Request] = []

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        path = request.url.path
        if path == "/robots.txt":
            if self.robots is None:
                return httpx.Response(404)
            return httpx.Response(200, text=self.robots, headers={"content-type": "text/plain"})
        page = self.pages.get(path)
        if page is None:
            return httpx.Response(404)
        if callable(page):
            return page(request)
        return httpx.Response(200, html=page)

    @property
    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self.handler)

    @property
    def page_requests(self) -> List[httpx.Request]:
        return [r for r in self.requests if r.url.path != "/robots.txt"]


class FakeEmbedder(BaseEmbedder):
    """Deterministic embedder; ``fail_when`` decides which batches raise."""

    def __init__(self, fail_when: Optional[Callable[[List[str]], bool]] = None, configured: bool = True):
        self.fail_when = fail_when
        self.configured = configured
        self.calls: List[List[str]] = []

    async def embed_documents(self, texts: List[str]) -> List[List[float]]:
        self.calls.append(list(texts))
        if self.fail_when is not None and self.fail_when(texts):
            raise EmbeddingError("Embedding provider unavailable")
        return [[float(len(t)), 1.0, 0.5] for t in texts]

    def credentials_configured(self) -> bool:
        return self.configured


async def public_resolver(hostname: str) -> List[str]:
    return [PUBLIC_IP]


@pytest.fixture
def seed() -> ValidatedUrl:
    return ValidatedUrl(url="https://example.com/", hostname="example.com", resolved_ips=frozenset({PUBLIC_IP}))


@pytest.fixture
def make_site():
    return FakeSite


@pytest.fixture
def make_crawler():
    def factory(site: FakeSite, **kwargs) -> SiteCrawler:
        kwargs.setdefault("throttle_seconds", 0)
        kwargs.setdefault("resolver", public_resolver)
        return SiteCrawler(transport=site.transport, **kwargs)
    return factory


@pytest.fixture
def store() -> InMemoryDocumentStore:
    return InMemoryDocumentStore()


@pytest.fixture
def embedder() -> FakeEmbedder:
    return FakeEmbedder()


@pytest.fixture
def make_embedder():
    return FakeEmbedder


@pytest.fixture
def make_orchestrator(store, embedder):
    def factory(crawler: SiteCrawler, **kwargs) -> IngestionOrchestrator:
        kwargs.setdefault("store", store)
        kwargs.setdefault("embedder", embedder)
        kwargs.setdefault("billing", StaticBillingClient(default_tier="scale", allowed_tiers=["scale"]))
        kwargs.setdefault("rate_limiter", InMemoryRateLimiter(max_requests=100, window_seconds=3600))
        kwargs.setdefault("in_flight", InFlightTracker(max_concurrent=1))
        kwargs.setdefault("validator", functools.partial(validate_url, resolver=public_resolver))
        return IngestionOrchestrator(crawler=crawler, **kwargs)
    return factory
