"""Rate limiter tests."""

import pytest
from httpx import AsyncClient

from app.middleware.rate_limit import RateLimiter, RateLimitMiddleware


class TestRateLimiter:
    def test_allows_within_limit(self):
        rl = RateLimiter(requests_per_minute=60, burst=5)
        for _ in range(5):
            assert rl.allow("client1") is True

    def test_blocks_after_burst(self):
        rl = RateLimiter(requests_per_minute=60, burst=3)
        for _ in range(3):
            rl.allow("client1")
        assert rl.allow("client1") is False

    def test_separate_clients(self):
        rl = RateLimiter(requests_per_minute=60, burst=2)
        rl.allow("a")
        rl.allow("a")
        assert rl.allow("a") is False
        assert rl.allow("b") is True

    def test_remaining_tokens(self):
        rl = RateLimiter(requests_per_minute=60, burst=5)
        assert rl.remaining("x") == 5
        rl.allow("x")
        assert rl.remaining("x") == 4

    def test_reset_single_key(self):
        rl = RateLimiter(requests_per_minute=60, burst=2)
        rl.allow("a")
        rl.allow("a")
        rl.reset("a")
        assert rl.allow("a") is True

    def test_refill_over_time(self):
        rl = RateLimiter(requests_per_minute=600, burst=3)  # 10/sec
        for _ in range(3):
            rl.allow("t")
        assert rl.allow("t") is False
        rl._buckets["t"]["last"] -= 1
        assert rl.allow("t") is True

    def test_retry_after(self):
        rl = RateLimiter(requests_per_minute=60, burst=1)  # 1/sec
        assert rl.retry_after("k") == 0
        rl.allow("k")
        assert rl.retry_after("k") == 1


class TestMiddlewareScope:
    def test_only_public_paths_limited(self):
        mw = RateLimitMiddleware(app=None)
        assert mw.limited("/api/v1/public/loja/requests")
        assert mw.limited("/api/v1/sync/callback")
        assert not mw.limited("/api/v1/requests/")
        assert not mw.limited("/health")

    @pytest.mark.asyncio
    async def test_public_tracking_throttled(self, client: AsyncClient):
        statuses = [
            (await client.get("/api/v1/public/track/RET-AAAAAAAA")).status_code
            for _ in range(12)
        ]
        assert statuses[0] == 404
        assert 429 in statuses

    @pytest.mark.asyncio
    async def test_operator_paths_not_throttled(self, client: AsyncClient):
        for _ in range(15):
            resp = await client.get("/health")
            assert resp.status_code == 200
