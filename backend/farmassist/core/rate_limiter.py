"""
Rate limiting module for FarmAssist.

Two layers live here:
- A fixed-window call limiter (RateLimiter) that guards provider and tool calls
  made by the orchestration engine. Its counters sit behind a pluggable store so
  the in-memory map can be swapped for Redis without touching the algorithm.
- SlowAPI endpoint limiting for the HTTP surface.
"""

import asyncio
import json
import logging
import time
from dataclasses import dataclass
from typing import Callable, Dict, Optional

from fastapi import Request
from slowapi import Limiter
from slowapi.errors import RateLimitExceeded
from slowapi.util import get_remote_address
from starlette.responses import JSONResponse

from farmassist.core.config import settings

logger = logging.getLogger("farmassist.rate_limiter")


@dataclass
class RateLimitRecord:
    """Counter for one key inside its current window"""
    count: int
    reset_time: float  # epoch milliseconds


@dataclass
class RateLimitResult:
    """Outcome of a single admission check"""
    allowed: bool
    remaining: int
    reset_time: float


class RateLimiterStore:
    """Base class for rate limiter record stores."""

    async def get(self, key: str) -> Optional[RateLimitRecord]:
        raise NotImplementedError

    async def set(self, key: str, record: RateLimitRecord) -> None:
        raise NotImplementedError

    async def close(self) -> None:
        pass


class MemoryRateLimiterStore(RateLimiterStore):
    """
    In-memory store for single-instance deployments.
    Expired records are not swept; they are replaced on the next call for their key.
    """

    def __init__(self):
        self._records: Dict[str, RateLimitRecord] = {}

    async def get(self, key: str) -> Optional[RateLimitRecord]:
        return self._records.get(key)

    async def set(self, key: str, record: RateLimitRecord) -> None:
        self._records[key] = record

    def __len__(self) -> int:
        return len(self._records)


class RedisRateLimiterStore(RateLimiterStore):
    """
    Redis-backed store so limits are shared across instances.
    Records expire in Redis together with their window.
    """

    KEY_PREFIX = "farmassist:ratelimit:"

    def __init__(self, url: str, clock: Optional[Callable[[], float]] = None):
        import redis.asyncio as redis

        self._redis = redis.from_url(
            url,
            encoding="utf-8",
            decode_responses=True,
            socket_timeout=5.0,
            socket_connect_timeout=5.0,
        )
        self._clock = clock or _now_ms

    async def get(self, key: str) -> Optional[RateLimitRecord]:
        raw = await self._redis.get(self.KEY_PREFIX + key)
        if not raw:
            return None
        data = json.loads(raw)
        return RateLimitRecord(count=int(data["count"]), reset_time=float(data["reset_time"]))

    async def set(self, key: str, record: RateLimitRecord) -> None:
        ttl_ms = max(1, int(record.reset_time - self._clock()))
        payload = json.dumps({"count": record.count, "reset_time": record.reset_time})
        await self._redis.set(self.KEY_PREFIX + key, payload, px=ttl_ms)

    async def close(self) -> None:
        await self._redis.close()


def _now_ms() -> float:
    return time.time() * 1000


class RateLimiter:
    """
    Fixed-window admission control.

    The first call for a key, or the first call after its window expired, starts
    a new window with count 1. Inside a window calls are admitted until the count
    reaches max_requests; the rest are rejected until the window resets.

    Usage:
        limiter = RateLimiter(MemoryRateLimiterStore())
        result = await limiter.allow("tool:session-1:getFields", 3, 1000)
        if not result.allowed:
            ...
    """

    def __init__(
        self,
        store: Optional[RateLimiterStore] = None,
        clock: Optional[Callable[[], float]] = None
    ):
        """
        Args:
            store: Record store, defaults to an in-memory map
            clock: Returns the current time in epoch milliseconds (injectable for tests)
        """
        self.store = store if store is not None else MemoryRateLimiterStore()
        self._clock = clock or _now_ms
        self._locks: Dict[str, asyncio.Lock] = {}
        self._lock_users: Dict[str, int] = {}

    async def allow(self, key: str, max_requests: int, window_ms: int) -> RateLimitResult:
        # Checks for one key are serialized; different keys proceed concurrently
        lock = self._locks.get(key)
        if lock is None:
            lock = self._locks[key] = asyncio.Lock()
        self._lock_users[key] = self._lock_users.get(key, 0) + 1
        try:
            async with lock:
                return await self._check(key, max_requests, window_ms)
        finally:
            self._lock_users[key] -= 1
            if not self._lock_users[key]:
                del self._lock_users[key]
                del self._locks[key]

    async def _check(self, key: str, max_requests: int, window_ms: int) -> RateLimitResult:
        now = self._clock()
        record = await self.store.get(key)

        if record is None or now > record.reset_time:
            new_record = RateLimitRecord(count=1, reset_time=now + window_ms)
            await self.store.set(key, new_record)
            return RateLimitResult(
                allowed=True,
                remaining=max(0, max_requests - 1),
                reset_time=new_record.reset_time
            )

        if record.count >= max_requests:
            return RateLimitResult(allowed=False, remaining=0, reset_time=record.reset_time)

        updated = RateLimitRecord(count=record.count + 1, reset_time=record.reset_time)
        await self.store.set(key, updated)
        return RateLimitResult(
            allowed=True,
            remaining=max(0, max_requests - updated.count),
            reset_time=updated.reset_time
        )


def create_rate_limiter() -> RateLimiter:
    """Build the call limiter for the configured backend (Redis when REDIS_URL is set)."""
    if settings.REDIS_URL:
        logged_url = settings.REDIS_URL.split("@")[-1]
        logger.info(f"Call rate limiter using Redis backend: {logged_url}")
        return RateLimiter(RedisRateLimiterStore(settings.REDIS_URL))

    if settings.IS_PRODUCTION:
        logger.warning(
            "PRODUCTION WARNING: Call rate limiting is using in-memory storage. "
            "Limits won't sync across instances. Configure REDIS_URL for distributed rate limiting."
        )
    return RateLimiter(MemoryRateLimiterStore())


# =============================================================================
# HTTP endpoint limiting (SlowAPI)
# =============================================================================

def get_real_client_ip(request: Request) -> str:
    """
    Get the real client IP, accounting for reverse proxies.
    Checks X-Forwarded-For header first, then falls back to direct IP.
    """
    forwarded_for = request.headers.get("X-Forwarded-For")
    if forwarded_for:
        return forwarded_for.split(",")[0].strip()

    real_ip = request.headers.get("X-Real-IP")
    if real_ip:
        return real_ip.strip()

    return get_remote_address(request)


limiter = Limiter(
    key_func=get_real_client_ip,
    default_limits=["1000/hour", "100/minute"],
    storage_uri=settings.REDIS_URL,
    strategy="fixed-window",
    headers_enabled=False,
)


def rate_limit_exceeded_handler(request: Request, exc: RateLimitExceeded) -> JSONResponse:
    """
    Custom handler for rate limit exceeded errors.
    Returns a JSON response with retry information.
    """
    logger.warning(
        f"Rate limit exceeded for {get_real_client_ip(request)} "
        f"on {request.method} {request.url.path}"
    )

    retry_after = getattr(exc, "retry_after", 60)

    return JSONResponse(
        status_code=429,
        content={
            "error": "Rate limit exceeded",
            "detail": f"Too many requests. Please retry after {retry_after} seconds.",
            "retry_after": retry_after,
        },
        headers={"Retry-After": str(retry_after)},
    )


class RateLimits:
    """Pre-configured rate limits for the HTTP endpoints."""

    AI_CHAT = "30/minute"
    STATUS_READ = "100/minute"
    PROGRESS_STREAM = "30/minute"
