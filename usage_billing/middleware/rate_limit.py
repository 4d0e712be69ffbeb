"""Fixed-window rate limiter for the public feedback widget.

Counts live in Redis (INCR with expiry) so every worker process shares
them. When Redis is unreachable each process falls back to an in-memory
window.
"""
from __future__ import annotations

import logging
import time
from collections import deque
from threading import Lock

import redis as redis_lib
from cachetools import TTLCache
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import JSONResponse, Response

from usage_billing.config import settings

logger = logging.getLogger(__name__)

# Paths and their rate limit configs: (max_requests, window_seconds)
_RATE_LIMIT_PATHS: dict[str, tuple[int, int]] = {
    "/widget/feedback": (5, 60),
}
_FALLBACK_CACHE_SIZE = 10_000


def _get_client_ip(request: Request) -> str:
    """Extract client IP, respecting X-Forwarded-For behind a proxy."""
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        return forwarded.split(",")[0].strip()
    client = request.client
    return client.host if client else "unknown"


def _get_redis() -> redis_lib.Redis | None:
    try:
        client = redis_lib.Redis.from_url(
            settings.redis_url, decode_responses=True, socket_timeout=1
        )
        client.ping()
        return client
    except redis_lib.RedisError as exc:
        logger.warning("Rate limiter: Redis unavailable (%s), using fallback", exc)
        return None


class RateLimitMiddleware(BaseHTTPMiddleware):
    def __init__(self, app: object) -> None:
        super().__init__(app)  # type: ignore[arg-type]
        self._redis: redis_lib.Redis | None = None
        self._redis_checked = False
        longest_window = max(window for _, window in _RATE_LIMIT_PATHS.values())
        self._fallback_cache: TTLCache[str, deque[float]] = TTLCache(
            maxsize=_FALLBACK_CACHE_SIZE,
            ttl=longest_window,
        )
        self._fallback_lock = Lock()

    def _ensure_redis(self) -> redis_lib.Redis | None:
        if not self._redis_checked:
            self._redis = _get_redis()
            self._redis_checked = True
        return self._redis

    def _too_many_requests_response(self, retry_after: int) -> JSONResponse:
        return JSONResponse(
            status_code=429,
            content={
                "code": "rate_limit_exceeded",
                "message": "Too many submissions. Please try again later.",
                "details": None,
            },
            headers={"Retry-After": str(retry_after)},
        )

    def _check_fallback_limit(
        self, client_ip: str, clean_path: str, config: tuple[int, int], now: float
    ) -> tuple[bool, int, int]:
        """In-memory sliding window: (allowed, remaining, reset_or_retry)."""
        max_requests, window_seconds = config
        key = f"rate_limit:fallback:{clean_path}:{client_ip}"

        with self._fallback_lock:
            window = self._fallback_cache.get(key)
            if window is None:
                window = deque()

            cutoff = now - window_seconds
            while window and window[0] <= cutoff:
                window.popleft()

            if len(window) >= max_requests:
                retry_after = max(1, int(window[0] + window_seconds - now))
                self._fallback_cache[key] = window
                return False, 0, retry_after

            window.append(now)
            self._fallback_cache[key] = window
            remaining = max(0, max_requests - len(window))
            reset_at = int(window[0] + window_seconds)
            return True, remaining, reset_at

    def _check_redis_limit(
        self,
        r: redis_lib.Redis,
        client_ip: str,
        clean_path: str,
        config: tuple[int, int],
        now: float,
    ) -> tuple[bool, int, int]:
        max_requests, window_seconds = config
        window_id = int(now // window_seconds)
        key = f"rate_limit:{clean_path}:{client_ip}:{window_id}"
        pipe = r.pipeline()
        pipe.incr(key)
        pipe.expire(key, window_seconds)
        current_count = pipe.execute()[0]
        reset_at = (window_id + 1) * window_seconds
        if current_count > max_requests:
            return False, 0, max(1, int(reset_at - now))
        return True, max(0, max_requests - current_count), reset_at

    async def dispatch(self, request: Request, call_next: object) -> Response:
        if request.method != "POST":
            return await call_next(request)  # type: ignore[call-arg]

        path = request.url.path
        clean_path = path.replace("/api/v1", "", 1) if path.startswith("/api/v1") else path
        config = _RATE_LIMIT_PATHS.get(clean_path)
        if not config:
            return await call_next(request)  # type: ignore[call-arg]

        client_ip = _get_client_ip(request)
        now = time.time()
        r = self._ensure_redis()
        allowed = None
        if r is not None:
            try:
                allowed, remaining, reset_or_retry = self._check_redis_limit(
                    r, client_ip, clean_path, config, now
                )
            except redis_lib.RedisError as exc:
                logger.warning(
                    "Rate limiter: Redis error (%s), using fallback",
                    exc.__class__.__name__,
                )
        if allowed is None:
            allowed, remaining, reset_or_retry = self._check_fallback_limit(
                client_ip, clean_path, config, now
            )

        if not allowed:
            logger.warning(
                "Rate limit exceeded: %s on %s (limit %d per %ds)",
                client_ip,
                clean_path,
                config[0],
                config[1],
            )
            return self._too_many_requests_response(reset_or_retry)

        response: Response = await call_next(request)  # type: ignore[call-arg]
        response.headers["X-RateLimit-Limit"] = str(config[0])
        response.headers["X-RateLimit-Remaining"] = str(remaining)
        response.headers["X-RateLimit-Reset"] = str(reset_or_retry)
        return response
