"""Fixed-window request rate limiting behind a swappable store.

Each limiter counts hits per client address inside a window that starts with
the first hit. The count lives in a :class:`RateLimitStore`: an in-process
dict (swept periodically by the app's lifespan task) or Redis, where keys
expire on their own.
"""
from __future__ import annotations

import asyncio
import logging
import math
import time
from dataclasses import dataclass
from typing import Callable, Protocol

import redis.asyncio as redis
from fastapi import Request, Response

from sanctuary.config import Settings, get_settings
from sanctuary.errors import RateLimitExceededError

log = logging.getLogger(__name__)

DEFAULT_MESSAGE = "Too many requests, please try again later"
SUBMIT_MESSAGE = "Too many submissions, please try again later"


@dataclass
class WindowState:
    count: int
    reset_at: float  # epoch seconds


class RateLimitStore(Protocol):
    async def hit(self, key: str, window_seconds: int) -> WindowState: ...

    async def sweep(self) -> int: ...

    async def close(self) -> None: ...


class InMemoryRateLimitStore:
    def __init__(self, clock: Callable[[], float] = time.time):
        self._clock = clock
        self._entries: dict[str, WindowState] = {}

    def __len__(self) -> int:
        return len(self._entries)

    async def hit(self, key: str, window_seconds: int) -> WindowState:
        now = self._clock()
        entry = self._entries.get(key)
        if entry is None or entry.reset_at < now:
            entry = WindowState(count=1, reset_at=now + window_seconds)
            self._entries[key] = entry
        else:
            entry.count += 1
        return WindowState(entry.count, entry.reset_at)

    async def sweep(self) -> int:
        """Drop windows that have already reset. Returns how many were removed."""
        now = self._clock()
        expired = [k for k, e in self._entries.items() if e.reset_at < now]
        for key in expired:
            del self._entries[key]
        return len(expired)

    async def close(self) -> None:
        self._entries.clear()


class RedisRateLimitStore:
    """Counts in Redis with INCR; the first hit of a window sets its EXPIRE."""

    def __init__(self, client: redis.Redis, prefix: str = "sanctuary:ratelimit",
                 clock: Callable[[], float] = time.time):
        self._redis = client
        self._prefix = prefix
        self._clock = clock

    @classmethod
    def from_url(cls, url: str) -> RedisRateLimitStore:
        return cls(redis.Redis.from_url(url, decode_responses=True))

    async def hit(self, key: str, window_seconds: int) -> WindowState:
        rkey = f"{self._prefix}:{key}"
        count = await self._redis.incr(rkey)
        if count == 1:
            await self._redis.expire(rkey, window_seconds)
        ttl = await self._redis.ttl(rkey)
        if ttl < 0:
            # Key without an expiry; start the window now.
            await self._redis.expire(rkey, window_seconds)
            ttl = window_seconds
        return WindowState(count=int(count), reset_at=self._clock() + ttl)

    async def sweep(self) -> int:
        return 0

    async def close(self) -> None:
        await self._redis.aclose()


def build_store(settings: Settings | None = None) -> RateLimitStore:
    settings = settings or get_settings()
    if settings.rate_limit_backend == "redis":
        log.info("Rate limiting backed by Redis at %s", settings.redis_url)
        return RedisRateLimitStore.from_url(settings.redis_url)
    return InMemoryRateLimitStore()


async def sweep_forever(store: RateLimitStore, interval: float) -> None:
    """Lifespan task: periodically evict expired windows."""
    while True:
        await asyncio.sleep(interval)
        removed = await store.sweep()
        if removed:
            log.debug("Swept %d expired rate-limit windows", removed)


def client_key(request: Request) -> str:
    return request.client.host if request.client else "unknown"


def get_store(request: Request) -> RateLimitStore:
    return request.app.state.rate_limit_store


class RateLimiter:
    """FastAPI dependency enforcing *limit* hits per *window_seconds* per client."""

    def __init__(self, name: str, limit: int, window_seconds: int, message: str = DEFAULT_MESSAGE):
        self.name = name
        self.limit = limit
        self.window_seconds = window_seconds
        self.message = message

    async def __call__(self, request: Request, response: Response) -> None:
        store = get_store(request)
        state = await store.hit(f"{self.name}:{client_key(request)}", self.window_seconds)
        headers = {
            "X-RateLimit-Limit": str(self.limit),
            "X-RateLimit-Remaining": str(max(0, self.limit - state.count)),
            "X-RateLimit-Reset": str(math.ceil(state.reset_at)),
        }
        if state.count > self.limit:
            log.warning("Rate limit %s exceeded by %s", self.name, client_key(request))
            raise RateLimitExceededError(self.message, headers)
        response.headers.update(headers)


def api_limiter(settings: Settings | None = None) -> RateLimiter:
    settings = settings or get_settings()
    return RateLimiter("api", settings.api_rate_limit, settings.api_rate_window_seconds)


def submit_limiter(settings: Settings | None = None) -> RateLimiter:
    settings = settings or get_settings()
    return RateLimiter("submit", settings.submit_rate_limit, settings.submit_rate_window_seconds,
                       SUBMIT_MESSAGE)
