"""
Dependencies for FastAPI endpoints
"""
from typing import Optional

from fastapi import Depends, HTTPException, Request, status

from site_ingest.config import settings
from site_ingest.core.embedder import BaseEmbedder, Embedder
from site_ingest.core.orchestrator import IngestionOrchestrator
from site_ingest.database import create_database
from site_ingest.services.billing import BillingClient, StaticBillingClient
from site_ingest.services.document_store import DocumentStore, InMemoryDocumentStore, SqlDocumentStore
from site_ingest.services.rate_limiter import InFlightTracker, InMemoryRateLimiter, RateLimiter, RedisRateLimiter

# Process-wide singletons, created on first use
_document_store: Optional[DocumentStore] = None
_rate_limiter: Optional[RateLimiter] = None
_in_flight: Optional[InFlightTracker] = None
_billing_client: Optional[BillingClient] = None
_embedder: Optional[BaseEmbedder] = None


def build_document_store() -> DocumentStore:
    backend = settings.DOCUMENT_STORE_BACKEND.lower()
    if backend == "memory":
        return InMemoryDocumentStore()
    if backend == "sql":
        return SqlDocumentStore(create_database(settings.DATABASE_URL))
    raise ValueError(f"Unsupported DOCUMENT_STORE_BACKEND: {settings.DOCUMENT_STORE_BACKEND}")


def build_rate_limiter() -> RateLimiter:
    backend = settings.RATE_LIMIT_BACKEND.lower()
    if backend == "memory":
        return InMemoryRateLimiter()
    if backend == "redis":
        return RedisRateLimiter.from_url(settings.REDIS_URL)
    raise ValueError(f"Unsupported RATE_LIMIT_BACKEND: {settings.RATE_LIMIT_BACKEND}")


def get_document_store() -> DocumentStore:
    global _document_store
    if _document_store is None:
        _document_store = build_document_store()
    return _document_store


def get_rate_limiter() -> RateLimiter:
    global _rate_limiter
    if _rate_limiter is None:
        _rate_limiter = build_rate_limiter()
    return _rate_limiter


def get_in_flight_tracker() -> InFlightTracker:
    global _in_flight
    if _in_flight is None:
        _in_flight = InFlightTracker()
    return _in_flight


def get_billing_client() -> BillingClient:
    global _billing_client
    if _billing_client is None:
        _billing_client = StaticBillingClient()
    return _billing_client


def get_embedder() -> BaseEmbedder:
    global _embedder
    if _embedder is None:
        _embedder = Embedder()
    return _embedder


def get_orchestrator(
    store: DocumentStore = Depends(get_document_store),
    embedder: BaseEmbedder = Depends(get_embedder),
    billing: BillingClient = Depends(get_billing_client),
    rate_limiter: RateLimiter = Depends(get_rate_limiter),
    in_flight: InFlightTracker = Depends(get_in_flight_tracker),
) -> IngestionOrchestrator:
    return IngestionOrchestrator(
        store=store,
        embedder=embedder,
        billing=billing,
        rate_limiter=rate_limiter,
        in_flight=in_flight,
    )


async def get_current_user_id(request: Request) -> str:
    """
    The authenticated user id, as set by the identity gateway in front of
    this service. Missing identity is a 401.
    """
    user_id = (request.headers.get(settings.AUTH_USER_HEADER) or "").strip()
    if not user_id:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Authentication required"
        )
    return user_id


async def get_request_context(request: Request):
    """Get request context for logging"""
    return {
        "client_ip": request.client.host if request.client else None,
        "user_agent": request.headers.get("user-agent"),
        "path": request.url.path,
        "method": request.method,
    }
