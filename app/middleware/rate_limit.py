"""Token bucket rate limiting for the anonymous public surface."""

import time
from collections import defaultdict
from typing import Optional, Sequence

from fastapi import Request, Response
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.responses import JSONResponse

DEFAULT_LIMITED_PREFIXES = ("/api/v1/public/", "/api/v1/sync/callback")


class RateLimiter:
    """Token bucket per key."""

    def __init__(self, requests_per_minute: int = 60, burst: int = 10):
        self.rate = requests_per_minute / 60.0  # tokens per second
        self.burst = burst
        self._buckets: dict[str, dict] = defaultdict(
            lambda: {"tokens": burst, "last": time.monotonic()}
        )

    def _refill(self, key: str) -> None:
        bucket = self._buckets[key]
        now = time.monotonic()
        bucket["tokens"] = min(self.burst, bucket["tokens"] + (now - bucket["last"]) * self.rate)
        bucket["last"] = now

    def allow(self, key: str) -> bool:
        self._refill(key)
        bucket = self._buckets[key]
        if bucket["tokens"] >= 1:
            bucket["tokens"] -= 1
            return True
        return False

    def remaining(self, key: str) -> int:
        self._refill(key)
        return max(0, int(self._buckets[key]["tokens"]))

    def retry_after(self, key: str) -> int:
        """Seconds until the next token is available."""
        self._refill(key)
        missing = 1 - self._buckets[key]["tokens"]
        if missing <= 0 or self.rate <= 0:
            return 0
        return max(1, int(missing / self.rate + 0.999))

    def reset(self, key: Optional[str] = None) -> None:
        if key:
            self._buckets.pop(key, None)
        else:
            self._buckets.clear()


class RateLimitMiddleware(BaseHTTPMiddleware):
    """Limits requests to the configured path prefixes, keyed by client IP."""

    def __init__(
        self,
        app,
        requests_per_minute: int = 30,
        burst: int = 10,
        prefixes: Sequence[str] = DEFAULT_LIMITED_PREFIXES,
        key_func=None,
    ):
        super().__init__(app)
        self.limiter = RateLimiter(requests_per_minute, burst)
        self.prefixes = tuple(prefixes)
        self.key_func = key_func or self._default_key

    @staticmethod
    def _default_key(request: Request) -> str:
        forwarded = request.headers.get("X-Forwarded-For")
        if forwarded:
            return forwarded.split(",")[0].strip()
        return request.client.host if request.client else "unknown"

    def limited(self, path: str) -> bool:
        return path.startswith(self.prefixes)

    async def dispatch(self, request: Request, call_next) -> Response:
        if not self.limited(request.url.path):
            return await call_next(request)

        key = self.key_func(request)
        if not self.limiter.allow(key):
            return JSONResponse(
                status_code=429,
                content={"error": {"code": "rate_limited", "message": "Too many requests, try again shortly"}},
                headers={"Retry-After": str(self.limiter.retry_after(key))},
            )

        response = await call_next(request)
        response.headers["X-RateLimit-Remaining"] = str(self.limiter.remaining(key))
        return response
