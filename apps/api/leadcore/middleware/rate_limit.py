from __future__ import annotations

import hashlib
import logging
import math
import threading
import time
import uuid
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any, Protocol

import redis
from fastapi.responses import JSONResponse
from starlette.concurrency import run_in_threadpool
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request

from leadcore.context import get_correlation_id
from leadcore.core.config import get_settings
from leadcore.metrics import observe_rate_limit_denial

logger = logging.getLogger("leadcore.rate_limit")

DEFAULT_LIMIT = 100
DEFAULT_WINDOW_MS = 60_000


@dataclass(frozen=True)
class RateLimitDecision:
    allowed: bool
    remaining: int
    reset_in_ms: int
    limit: int


class CounterStore(Protocol):
    def hit(self, key: str, limit: int, window_ms: int, now_ms: int) -> tuple[bool, int, int]:
        """Atomically admit or deny one request. Returns (allowed, count, reset_at_ms)."""

    def clear(self) -> None: ...


@dataclass
class _WindowState:
    count: int
    reset_at_ms: int


class InMemoryCounterStore:
    """Per-process fixed windows. Each server instance enforces its own limit."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._windows: dict[str, _WindowState] = {}
        self._next_sweep_ms = 0

    def __len__(self) -> int:
        with self._lock:
            return len(self._windows)

    def hit(self, key: str, limit: int, window_ms: int, now_ms: int) -> tuple[bool, int, int]:
        with self._lock:
            # At most one sweep per window; only keys active in it stay in memory.
            if now_ms >= self._next_sweep_ms:
                self._sweep(now_ms)
                self._next_sweep_ms = now_ms + window_ms

            state = self._windows.get(key)
            if state is None or now_ms > state.reset_at_ms:
                state = _WindowState(count=1, reset_at_ms=now_ms + window_ms)
                self._windows[key] = state
                return True, state.count, state.reset_at_ms

            if state.count >= limit:
                return False, state.count, state.reset_at_ms

            state.count += 1
            return True, state.count, state.reset_at_ms

    def _sweep(self, now_ms: int) -> None:
        expired = [key for key, state in self._windows.items() if state.reset_at_ms < now_ms]
        for key in expired:
            del self._windows[key]

    def clear(self) -> None:
        with self._lock:
            self._windows.clear()


_REDIS_HIT_SCRIPT = """
local current = redis.call('GET', KEYS[1])
if not current then
  redis.call('SET', KEYS[1], 1, 'PX', ARGV[2])
  return {1, 1, tonumber(ARGV[2])}
end
current = tonumber(current)
local ttl = redis.call('PTTL', KEYS[1])
if current >= tonumber(ARGV[1]) then
  return {0, current, ttl}
end
current = redis.call('INCR', KEYS[1])
return {1, current, ttl}
"""


class RedisCounterStore:
    """Fixed windows shared by every instance pointing at the same Redis."""

    def __init__(self, client: redis.Redis, prefix: str = "leadcore:ratelimit:") -> None:
        self._client = client
        self._prefix = prefix
        self._script = client.register_script(_REDIS_HIT_SCRIPT)

    def hit(self, key: str, limit: int, window_ms: int, now_ms: int) -> tuple[bool, int, int]:
        allowed, count, ttl_ms = self._script(keys=[self._prefix + key], args=[limit, window_ms])
        ttl_ms = int(ttl_ms)
        if ttl_ms < 0:
            ttl_ms = window_ms
        return bool(allowed), int(count), now_ms + ttl_ms

    def clear(self) -> None:
        for redis_key in self._client.scan_iter(match=f"{self._prefix}*"):
            self._client.delete(redis_key)


def _monotonic_ms() -> int:
    return int(time.monotonic() * 1000)


class FixedWindowRateLimiter:
    def __init__(self, store: CounterStore, clock: Callable[[], int] = _monotonic_ms) -> None:
        self._store = store
        self._clock = clock

    def check(self, key: str, *, limit: int = DEFAULT_LIMIT, window_ms: int = DEFAULT_WINDOW_MS) -> RateLimitDecision:
        if limit <= 0:
            return RateLimitDecision(allowed=False, remaining=0, reset_in_ms=window_ms, limit=limit)

        now_ms = self._clock()
        allowed, count, reset_at_ms = self._store.hit(key, limit, window_ms, now_ms)
        reset_in_ms = max(0, reset_at_ms - now_ms)
        remaining = max(0, limit - count) if allowed else 0
        return RateLimitDecision(allowed=allowed, remaining=remaining, reset_in_ms=reset_in_ms, limit=limit)

    def clear(self) -> None:
        self._store.clear()


def rate_limit_headers(decision: RateLimitDecision) -> dict[str, str]:
    return {
        "X-RateLimit-Limit": str(decision.limit),
        "X-RateLimit-Remaining": str(decision.remaining),
        "X-RateLimit-Reset": str(math.ceil(decision.reset_in_ms / 1000)),
    }


_limiter: FixedWindowRateLimiter | None = None
_limiter_lock = threading.Lock()


def get_rate_limiter() -> FixedWindowRateLimiter:
    global _limiter
    with _limiter_lock:
        if _limiter is None:
            settings = get_settings()
            if settings.rate_limit_backend == "redis":
                store: CounterStore = RedisCounterStore(redis.Redis.from_url(settings.redis_url))
            else:
                store = InMemoryCounterStore()
            _limiter = FixedWindowRateLimiter(store)
        return _limiter


def reset_rate_limiter() -> None:
    global _limiter
    with _limiter_lock:
        if _limiter is not None:
            _limiter.clear()
        _limiter = None


class IngestionRateLimitMiddleware(BaseHTTPMiddleware):
    protected_prefix = "/api/v1/"
    exempt_paths = {"/api/v1/leads/scores/refresh"}

    async def dispatch(self, request: Request, call_next):  # type: ignore[no-untyped-def]
        settings = get_settings()
        if settings.rate_limit_disabled or not self._is_protected(request):
            return await call_next(request)

        rate_limit_key = _resolve_rate_limit_key(request)
        # Redis round trips block; the check runs off the event loop.
        decision = await run_in_threadpool(
            get_rate_limiter().check,
            rate_limit_key,
            limit=settings.rate_limit_ingestion_per_minute,
            window_ms=settings.rate_limit_window_seconds * 1000,
        )
        headers = rate_limit_headers(decision)

        if decision.allowed:
            response = await call_next(request)
            response.headers.update(headers)
            return response

        observe_rate_limit_denial()
        logger.warning("rate_limit.denied", extra={"rate_limit_key": rate_limit_key, "path": request.url.path})
        correlation_id = (
            get_correlation_id()
            or getattr(request.state, "correlation_id", None)
            or str(uuid.uuid4())
        )
        content: dict[str, Any] = {
            "success": False,
            "error": "Too many requests",
            "correlation_id": correlation_id,
        }
        response = JSONResponse(status_code=429, content=content)
        response.headers.update(headers)
        response.headers["Retry-After"] = headers["X-RateLimit-Reset"]
        response.headers["X-Correlation-Id"] = correlation_id
        return response

    def _is_protected(self, request: Request) -> bool:
        path = request.url.path
        if request.method.upper() != "POST":
            return False
        return path.startswith(self.protected_prefix) and path not in self.exempt_paths


def _resolve_rate_limit_key(request: Request) -> str:
    api_key = request.headers.get("x-api-key", "")
    if not api_key:
        return "anonymous"
    # Raw keys never leave the request; buckets and logs use a digest.
    return hashlib.sha256(api_key.encode("utf-8")).hexdigest()[:32]
