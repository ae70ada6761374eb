import time
from collections import defaultdict, deque
from typing import Deque, Dict, Iterable, Optional

from fastapi import Request
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.responses import JSONResponse

import redis


def _too_many(retry_after: int) -> JSONResponse:
    return JSONResponse(
        status_code=429,
        content={"error": {"code": "rate_limited", "message": "Too many requests", "details": {"retry_after": retry_after}}},
        headers={"Retry-After": str(retry_after)},
    )


def _client_key(request: Request) -> str:
    client = request.client.host if request.client else "unknown"
    return f"ip:{client}"


class SlidingWindowLimiter(BaseHTTPMiddleware):
    """Per-client request cap over a rolling minute, held in process memory.

    Only paths under one of ``prefixes`` are counted; everything else passes
    straight through.
    """

    def __init__(self, app, limit_per_minute: int = 60, prefixes: Iterable[str] = ("/auth/",)):
        super().__init__(app)
        self.window_seconds = 60
        self.limit_per_minute = limit_per_minute
        self.prefixes = tuple(prefixes)
        self.store: Dict[str, Deque[float]] = defaultdict(deque)

    async def dispatch(self, request: Request, call_next):
        path = request.url.path
        if not path.startswith(self.prefixes):
            return await call_next(request)
        now = time.monotonic()
        dq = self.store[_client_key(request)]
        while dq and now - dq[0] > self.window_seconds:
            dq.popleft()
        if len(dq) >= self.limit_per_minute:
            return _too_many(max(1, int(self.window_seconds - (now - dq[0]))))
        dq.append(now)
        return await call_next(request)


class RedisRateLimiter(BaseHTTPMiddleware):
    """Fixed one-minute window counters shared across workers through Redis.

    Fails open when Redis is unreachable so auth stays available.
    """

    def __init__(
        self,
        app,
        redis_url: str = "",
        limit_per_minute: int = 60,
        prefix: str = "rl_identity",
        prefixes: Iterable[str] = ("/auth/",),
        client: Optional[object] = None,
    ):
        super().__init__(app)
        self.redis = client if client is not None else self._connect(redis_url)
        self.limit_per_minute = limit_per_minute
        self.prefix = prefix
        self.prefixes = tuple(prefixes)

    def _connect(self, url: str):
        if not url:
            return None
        return redis.from_url(url, decode_responses=True)

    async def dispatch(self, request: Request, call_next):
        path = request.url.path
        if not path.startswith(self.prefixes) or self.redis is None:
            return await call_next(request)
        now = int(time.time())
        key = f"{self.prefix}:{_client_key(request)}:{now // 60}"
        try:
            count = self.redis.incr(key)
            if count == 1:
                self.redis.expire(key, 70)
        except Exception:
            # fail open
            return await call_next(request)
        if count > self.limit_per_minute:
            return _too_many(60 - (now % 60))
        return await call_next(request)
