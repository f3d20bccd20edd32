"""
Per-(tenant, platform) sliding-window rate limiter.

``admit`` answers whether one more call fits under the platform ceiling for
the trailing window; ``record`` is called separately, only after a call was
actually attempted. ``PlatformCallGate`` pairs the two around a single HTTP
request. Counters live in an injectable store so tests get a
fresh instance and production workers can share a Redis-backed one.

If the counter store is unreachable the limiter fails open: sync keeps
running and the platform's own 429 responses become the backstop.
"""

from __future__ import annotations

import threading
import time
import uuid
from collections import defaultdict, deque
from typing import Callable, Protocol

import structlog

from core.config import Settings, get_settings
from core.errors import RateLimited

logger = structlog.get_logger()


class CounterStore(Protocol):
    async def count_since(self, key: str, window_start: float) -> int: ...

    async def add(self, key: str, timestamp: float, ttl_seconds: int) -> None: ...


class InMemoryCounterStore:
    """Timestamps per key in a deque, guarded by a threading lock."""

    def __init__(self):
        self._events: dict[str, deque[float]] = defaultdict(deque)
        self._lock = threading.Lock()

    async def count_since(self, key: str, window_start: float) -> int:
        with self._lock:
            events = self._events[key]
            while events and events[0] <= window_start:
                events.popleft()
            return len(events)

    async def add(self, key: str, timestamp: float, ttl_seconds: int) -> None:
        with self._lock:
            self._events[key].append(timestamp)


class RedisCounterStore:
    """Sorted-set sliding window shared by every worker process."""

    def __init__(self, redis_url: str | None = None, client=None):
        if client is None:
            import redis.asyncio as aioredis

            client = aioredis.from_url(redis_url or get_settings().redis_url)
        self.redis = client

    async def count_since(self, key: str, window_start: float) -> int:
        async with self.redis.pipeline(transaction=True) as pipe:
            pipe.zremrangebyscore(key, "-inf", window_start)
            pipe.zcard(key)
            _, count = await pipe.execute()
        return int(count)

    async def add(self, key: str, timestamp: float, ttl_seconds: int) -> None:
        member = f"{timestamp}:{uuid.uuid4().hex}"
        async with self.redis.pipeline(transaction=True) as pipe:
            pipe.zadd(key, {member: timestamp})
            pipe.expire(key, ttl_seconds)
            await pipe.execute()

    async def aclose(self) -> None:
        await self.redis.aclose()


class RateLimiter:
    def __init__(
        self,
        store: CounterStore,
        limits: dict[str, int],
        window_seconds: int = 60,
        clock: Callable[[], float] = time.time,
    ):
        self.store = store
        self.limits = dict(limits)
        self.window_seconds = window_seconds
        self.clock = clock

    @staticmethod
    def key(tenant_id: str, platform: str) -> str:
        return f"ratelimit:{tenant_id}:{platform}"

    def ceiling(self, platform: str) -> int:
        if platform in self.limits:
            return self.limits[platform]
        return min(self.limits.values()) if self.limits else 0

    async def admit(self, tenant_id: str, platform: str) -> bool:
        """True when one more call for (tenant, platform) stays under the ceiling."""
        now = self.clock()
        try:
            count = await self.store.count_since(self.key(str(tenant_id), platform), now - self.window_seconds)
        except Exception as exc:  # noqa: BLE001
            logger.warning(
                "rate_limiter.store_unavailable",
                tenant_id=str(tenant_id),
                platform=platform,
                error=str(exc),
            )
            return True

        admitted = count < self.ceiling(platform)
        if not admitted:
            logger.info(
                "rate_limiter.denied",
                tenant_id=str(tenant_id),
                platform=platform,
                count=count,
                ceiling=self.ceiling(platform),
            )
        return admitted

    async def record(self, tenant_id: str, platform: str) -> None:
        """Count one attempted call against the (tenant, platform) window."""
        try:
            await self.store.add(
                self.key(str(tenant_id), platform),
                self.clock(),
                ttl_seconds=self.window_seconds * 2,
            )
        except Exception as exc:  # noqa: BLE001
            logger.warning(
                "rate_limiter.record_failed",
                tenant_id=str(tenant_id),
                platform=platform,
                error=str(exc),
            )

    async def aclose(self) -> None:
        close = getattr(self.store, "aclose", None)
        if close is not None:
            await close()


class PlatformCallGate:
    """Admit before, record after, one platform request for (tenant, platform).

    Adapters enter the gate around each HTTP call. A denied admission raises
    RateLimited and nothing is recorded; an attempted call is recorded
    whether or not it succeeded.
    """

    def __init__(
        self,
        limiter: RateLimiter,
        tenant_id: str,
        platform: str,
        on_record: Callable[[], None] | None = None,
    ):
        self.limiter = limiter
        self.tenant_id = str(tenant_id)
        self.platform = platform
        self.on_record = on_record

    async def __aenter__(self) -> "PlatformCallGate":
        if not await self.limiter.admit(self.tenant_id, self.platform):
            raise RateLimited(f"{self.platform} rate limit reached for tenant", platform=self.platform)
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.limiter.record(self.tenant_id, self.platform)
        if self.on_record is not None:
            self.on_record()


def build_rate_limiter(settings: Settings | None = None) -> RateLimiter:
    """Limiter wired from settings (memory or Redis counters)."""
    settings = settings or get_settings()
    if settings.rate_limit_backend == "redis":
        store: CounterStore = RedisCounterStore(settings.redis_url)
    else:
        store = InMemoryCounterStore()
    return RateLimiter(
        store=store,
        limits={
            "shopee": settings.rate_limit_for("shopee"),
            "tiktokshop": settings.rate_limit_for("tiktokshop"),
        },
        window_seconds=settings.rate_limit_window_seconds,
    )
