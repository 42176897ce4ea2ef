"""
Service layer components
"""
from .billing import BillingClient, StaticBillingClient
from .document_store import DocumentStore, InMemoryDocumentStore, SqlDocumentStore
from .rate_limiter import InFlightTracker, InMemoryRateLimiter, RateLimiter, RedisRateLimiter

__all__ = [
    "BillingClient",
    "StaticBillingClient",
    "DocumentStore",
    "InMemoryDocumentStore",
    "SqlDocumentStore",
    "InFlightTracker",
    "InMemoryRateLimiter",
    "RateLimiter",
    "RedisRateLimiter",
]
