import time
import uuid
import asyncio
import logging
from abc import ABC, abstractmethod
from collections import defaultdict
from typing import Callable, Dict, List, Optional

import redis.asyncio as aioredis

from site_ingest.config import settings

logger = logging.getLogger(__name__)


class RateLimiter(ABC):
    """Sliding-window admission control keyed by user."""

    @abstractmethod
    async def try_admit(self, key: str) -> bool:
        """Record an admission and return True, or return False if the window is full."""

    @abstractmethod
    async def count_recent(self, key: str, window_seconds: Optional[float] = None) -> int:
        pass

    async def close(self) -> None:
        pass


class InMemoryRateLimiter(RateLimiter):
    """
    In-memory sliding window. Timestamps older than the window are dropped
    lazily on each access. Only valid for a single process; use
    RedisRateLimiter when several instances share the limit.
    """

    def __init__(
        self,
        max_requests: int = settings.IMPORT_RATE_LIMIT,
        window_seconds: float = settings.IMPORT_RATE_WINDOW_SECONDS,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.max_requests = max_requests
        self.window_seconds = window_seconds
        self._clock = clock
        # Structure: { key: [timestamp1, timestamp2, ...] }
        self._store: Dict[str, List[float]] = defaultdict(list)
        self._lock = asyncio.Lock()

    def _prune(self, key: str, now: float) -> List[float]:
        recent = [t for t in self._store.get(key, []) if now - t < self.window_seconds]
        if recent:
            self._store[key] = recent
        else:
            self._store.pop(key, None)
        return recent

    async def try_admit(self, key: str) -> bool:
        async with self._lock:
            now = self._clock()
            recent = self._prune(key, now)
            if len(recent) >= self.max_requests:
                logger.info(f"Rate limit reached for {key}: {len(recent)}/{self.max_requests}")
                return False
            self._store[key].append(now)
            return True

    async def count_recent(self, key: str, window_seconds: Optional[float] = None) -> int:
        window = window_seconds if window_seconds is not None else self.window_seconds
        async with self._lock:
            now = self._clock()
            self._prune(key, now)
            return sum(1 for t in self._store.get(key, []) if now - t < window)


# Trim the window, check the count and record the admission in one step.
_ADMIT_SCRIPT = """
local key = KEYS[1]
local now = tonumber(ARGV[1])
local window = tonumber(ARGV[2])
local limit = tonumber(ARGV[3])
redis.call('ZREMRANGEBYSCORE', key, '-inf', now - window)
if redis.call('ZCARD', key) >= limit then
    return 0
end
redis.call('ZADD', key, now, ARGV[4])
redis.call('EXPIRE', key, math.ceil(window))
return 1
"""


class RedisRateLimiter(RateLimiter):
    """Sliding window stored in a Redis sorted set, shared by all instances."""

    def __init__(
        self,
        client: aioredis.Redis,
        max_requests: int = settings.IMPORT_RATE_LIMIT,
        window_seconds: float = settings.IMPORT_RATE_WINDOW_SECONDS,
        prefix: str = "site_ingest:import_rate",
    ):
        self.client = client
        self.max_requests = max_requests
        self.window_seconds = window_seconds
        self.prefix = prefix
        self._admit = client.register_script(_ADMIT_SCRIPT)

    @classmethod
    def from_url(cls, redis_url: str = settings.REDIS_URL, **kwargs) -> "RedisRateLimiter":
        return cls(aioredis.from_url(redis_url, decode_responses=True), **kwargs)

    def _key(self, key: str) -> str:
        return f"{self.prefix}:{key}"

    async def try_admit(self, key: str) -> bool:
        now = time.time()
        admitted = await self._admit(
            keys=[self._key(key)],
            args=[now, self.window_seconds, self.max_requests, f"{now}:{uuid.uuid4().hex}"],
        )
        if not int(admitted):
            logger.info(f"Rate limit reached for {key}")
            return False
        return True

    async def count_recent(self, key: str, window_seconds: Optional[float] = None) -> int:
        window = window_seconds if window_seconds is not None else self.window_seconds
        return int(await self.client.zcount(self._key(key), time.time() - window, "+inf"))

    async def close(self) -> None:
        await self.client.aclose()


class InFlightTracker:
    """Counts crawl jobs currently running per user in this process."""

    def __init__(self, max_concurrent: int = settings.IMPORT_MAX_CONCURRENT_PER_USER):
        self.max_concurrent = max_concurrent
        self._running: Dict[str, int] = defaultdict(int)
        self._lock = asyncio.Lock()

    async def count(self, key: str) -> int:
        async with self._lock:
            return self._running.get(key, 0)

    async def has_capacity(self, key: str) -> bool:
        return await self.count(key) < self.max_concurrent

    async def acquire(self, key: str) -> None:
        async with self._lock:
            self._running[key] += 1

    async def release(self, key: str) -> None:
        async with self._lock:
            remaining = self._running.get(key, 0) - 1
            if remaining > 0:
                self._running[key] = remaining
            else:
                self._running.pop(key, None)
