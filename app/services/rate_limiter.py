# =============================================================================
# Client-Side Rate Limiter — Sliding Window per External Service
# =============================================================================
#
# Caps how often this process (or, with the Redis backend, the whole
# deployment) calls the embedding API, the LLM and web search.
#
# DESIGN DECISION: Sliding window over fixed window. A fixed window lets a
# full limit through on each side of a boundary; the sliding window keeps
# the ceiling over any `window_seconds` span.
#
# DESIGN DECISION: Fail fast. A full window raises RateLimitedError with a
# retry_after hint instead of sleeping. The caller decides: the agent
# surfaces it as a tool error, Celery tasks retry later.
#
# BACKENDS:
#   - InMemoryRateLimiter: deque of timestamps under a threading.Lock.
#     Works from sync code (Celery, embed_batch) and async code alike.
#   - RedisRateLimiter: ZSET per limiter name (zremrangebyscore → zcard →
#     zadd → expire in one pipeline). If Redis is unreachable the call is
#     allowed through with a warning, so a Redis outage never blocks
#     research runs.
#
# Uses Redis db 2 (db 0/1 reserved for Celery).
# =============================================================================

from __future__ import annotations

import logging
import threading
import time
import uuid
from collections import deque
from typing import Protocol

from app.config import settings
from app.exceptions import RateLimitedError

logger = logging.getLogger(__name__)


class SlidingWindowRateLimiter(Protocol):
    name: str
    limit: int
    window_seconds: float

    def acquire(self) -> None:
        """Take one slot, or raise RateLimitedError if the window is full."""
        ...


# ---------------------------------------------------------------------------
# Implementation 1: In-process window
# ---------------------------------------------------------------------------


class InMemoryRateLimiter:
    def __init__(
        self,
        name: str,
        limit: int,
        window_seconds: float = 60.0,
        clock=time.monotonic,
    ) -> None:
        if limit < 1:
            raise ValueError(f"Rate limit for '{name}' must be >= 1, got {limit}")
        self.name = name
        self.limit = limit
        self.window_seconds = window_seconds
        self._clock = clock
        self._calls: deque[float] = deque()
        self._lock = threading.Lock()

    def acquire(self) -> None:
        with self._lock:
            now = self._clock()
            window_start = now - self.window_seconds
            while self._calls and self._calls[0] <= window_start:
                self._calls.popleft()

            if len(self._calls) >= self.limit:
                retry_after = self._calls[0] + self.window_seconds - now
                raise RateLimitedError(
                    self.name, self.limit, self.window_seconds, max(retry_after, 0.0),
                )
            self._calls.append(now)

    @property
    def in_window(self) -> int:
        with self._lock:
            return len(self._calls)


# ---------------------------------------------------------------------------
# Implementation 2: Redis ZSET window (shared across processes)
# ---------------------------------------------------------------------------


class RedisRateLimiter:
    """
    Sliding window shared by the API and every Celery worker.

    Sync redis client: acquire() is called from sync code paths (embedding
    batches inside Celery tasks) as well as from the event loop, where one
    round-trip is negligible next to the external call it guards.
    """

    def __init__(
        self,
        name: str,
        limit: int,
        window_seconds: float = 60.0,
        client=None,
    ) -> None:
        self.name = name
        self.limit = limit
        self.window_seconds = window_seconds
        self._client = client
        self._key = f"ratelimit:service:{name}"

    def _get_client(self):
        if self._client is None:
            import redis

            self._client = redis.Redis.from_url(
                settings.rate_limit_redis_url,
                decode_responses=True,
            )
        return self._client

    def acquire(self) -> None:
        import redis

        try:
            r = self._get_client()
            now = time.time()
            window_start = now - self.window_seconds

            pipe = r.pipeline()
            pipe.zremrangebyscore(self._key, 0, window_start)
            pipe.zcard(self._key)
            pipe.zrange(self._key, 0, 0, withscores=True)
            results = pipe.execute()
            current_count = results[1]

            if current_count >= self.limit:
                oldest = results[2][0][1] if results[2] else now
                retry_after = oldest + self.window_seconds - now
                raise RateLimitedError(
                    self.name, self.limit, self.window_seconds, max(retry_after, 0.0),
                )

            pipe = r.pipeline()
            # Unique member so two calls in the same microsecond both count
            pipe.zadd(self._key, {f"{now}:{uuid.uuid4().hex[:8]}": now})
            pipe.expire(self._key, int(self.window_seconds) + 10)
            pipe.execute()

        except redis.RedisError as e:
            logger.warning(
                "Rate limiter '%s' unavailable (Redis error): %s. "
                "Allowing call through.",
                self.name,
                e,
            )


# ---------------------------------------------------------------------------
# Factory — one limiter per external service
# ---------------------------------------------------------------------------

_LIMITS = {
    "embedding": lambda: settings.embedding_rate_limit,
    "llm": lambda: settings.llm_rate_limit,
    "web_search": lambda: settings.web_search_rate_limit,
}

_limiters: dict[str, SlidingWindowRateLimiter] = {}
_limiters_lock = threading.Lock()


def get_rate_limiter(name: str) -> SlidingWindowRateLimiter:
    """
    Return the process-wide limiter for `name` ("embedding", "llm",
    "web_search"), created on first use from settings.
    """
    if name not in _LIMITS:
        raise ValueError(
            f"Unknown rate limiter '{name}'. Known: {sorted(_LIMITS)}"
        )
    with _limiters_lock:
        limiter = _limiters.get(name)
        if limiter is None:
            limit = _LIMITS[name]()
            if settings.rate_limit_backend == "redis":
                limiter = RedisRateLimiter(name, limit, settings.rate_limit_window_seconds)
            else:
                limiter = InMemoryRateLimiter(name, limit, settings.rate_limit_window_seconds)
            _limiters[name] = limiter
            logger.info(
                "Initialized %s rate limiter '%s' (%d calls / %gs)",
                settings.rate_limit_backend, name, limit,
                settings.rate_limit_window_seconds,
            )
        return limiter


def reset_rate_limiters() -> None:
    """Drop cached limiters (tests, settings reload)."""
    with _limiters_lock:
        _limiters.clear()
