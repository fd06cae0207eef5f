from __future__ import annotations

from fastapi import HTTPException
import pytest
from starlette.requests import Request
from starlette.responses import Response

from lexybrain.apps.api import rate_limit
from lexybrain.apps.api.rate_limit import InMemoryRateLimiter, RedisRateLimiter, enforce_rate_limit, identify


class FakeClock:
    def __init__(self, now: float = 1_000_040.0) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now


class FakeRedis:
    def __init__(self, *, fail: bool = False) -> None:
        self.counts: dict[str, int] = {}
        self.expiries: dict[str, int] = {}
        self.fail = fail

    async def incr(self, key: str) -> int:
        if self.fail:
            raise ConnectionError("redis down")
        self.counts[key] = self.counts.get(key, 0) + 1
        return self.counts[key]

    async def expire(self, key: str, seconds: int) -> bool:
        self.expiries[key] = seconds
        return True


class FailingLimiter:
    async def hit(self, key: str, *, limit: int, window_s: int):
        raise ConnectionError("redis down")


def _request(headers: dict[str, str] | None = None, client: tuple[str, int] = ("10.0.0.1", 5000)) -> Request:
    scope = {
        "type": "http",
        "method": "POST",
        "scheme": "http",
        "server": ("test", 80),
        "path": "/v1/ext/insights",
        "query_string": b"",
        "headers": [(key.lower().encode(), value.encode()) for key, value in (headers or {}).items()],
        "client": client,
    }
    return Request(scope)


@pytest.mark.asyncio
async def test_in_memory_window_counts_and_resets() -> None:
    clock = FakeClock()
    limiter = InMemoryRateLimiter(time_provider=clock)

    decisions = [await limiter.hit("k", limit=2, window_s=60) for _ in range(3)]

    assert [d.allowed for d in decisions] == [True, True, False]
    assert [d.remaining for d in decisions] == [1, 0, 0]
    # 1_000_040 sits 20s into its 60s window.
    assert decisions[-1].retry_after_s == 40

    clock.now += 40
    fresh = await limiter.hit("k", limit=2, window_s=60)
    assert fresh.allowed and fresh.remaining == 1
    assert (await limiter.hit("other", limit=2, window_s=60)).remaining == 1


@pytest.mark.asyncio
async def test_in_memory_limiter_drops_closed_windows() -> None:
    clock = FakeClock()
    limiter = InMemoryRateLimiter(time_provider=clock)
    for index in range(1000):
        await limiter.hit(f"anonymous:10.0.{index // 256}.{index % 256}:/v1/ext/insights", limit=5, window_s=60)
    assert limiter.tracked_windows() == 1000

    clock.now += 3600
    decision = await limiter.hit("anonymous:10.9.9.9:/v1/ext/insights", limit=5, window_s=60)

    assert decision.allowed
    assert limiter.tracked_windows() == 1


@pytest.mark.asyncio
async def test_in_memory_limiter_keeps_open_windows_when_sweeping() -> None:
    clock = FakeClock()
    limiter = InMemoryRateLimiter(time_provider=clock)
    await limiter.hit("a", limit=2, window_s=3600)
    await limiter.hit("b", limit=2, window_s=60)

    clock.now += 120
    await limiter.hit("c", limit=2, window_s=60)
    second = await limiter.hit("a", limit=2, window_s=3600)

    assert limiter.tracked_windows() == 2
    assert second.remaining == 0


@pytest.mark.asyncio
async def test_redis_limiter_sets_expiry_on_first_hit_only() -> None:
    redis = FakeRedis()
    limiter = RedisRateLimiter(redis=redis, prefix="rl", time_provider=FakeClock())

    first = await limiter.hit("user:u1", limit=1, window_s=60)
    second = await limiter.hit("user:u1", limit=1, window_s=60)

    bucket = f"rl:user:u1:{int(1_000_040 // 60)}"
    assert redis.counts == {bucket: 2}
    assert redis.expiries == {bucket: 60}
    assert first.allowed is True
    assert second.allowed is False


def test_identify_picks_tier_from_headers() -> None:
    assert identify(_request()) == ("ip:10.0.0.1", "anonymous")
    assert identify(_request({"X-Forwarded-For": "203.0.113.9, 10.0.0.1"})) == ("ip:203.0.113.9", "anonymous")
    assert identify(_request({"X-User-Id": "u1"})) == ("user:u1", "authenticated")
    assert identify(_request({"X-User-Id": "u1", "X-User-Plan": "Scale"})) == ("user:u1", "premium")


@pytest.mark.asyncio
async def test_enforce_sets_headers_then_throttles(monkeypatch) -> None:
    monkeypatch.setenv("RL_ANONYMOUS_REQUESTS_PER_WINDOW", "1")
    rate_limit.set_rate_limiter(InMemoryRateLimiter(time_provider=FakeClock()))

    response = Response()
    await enforce_rate_limit(_request(), response)
    assert response.headers["X-RateLimit-Limit"] == "1"
    assert response.headers["X-RateLimit-Remaining"] == "0"

    with pytest.raises(HTTPException) as excinfo:
        await enforce_rate_limit(_request(), Response())
    assert excinfo.value.status_code == 429
    assert excinfo.value.detail["code"] == "RATE_LIMITED"
    assert excinfo.value.detail["tier"] == "anonymous"
    assert excinfo.value.headers["Retry-After"] == "40"

    # Authenticated callers are counted separately.
    await enforce_rate_limit(_request({"X-User-Id": "u1"}), Response())


@pytest.mark.asyncio
async def test_limiter_failure_fails_open_by_default() -> None:
    rate_limit.set_rate_limiter(FailingLimiter())
    response = Response()

    await enforce_rate_limit(_request({"X-User-Id": "u1"}), response)

    assert response.headers["X-RateLimit-Status"] == "degraded"


@pytest.mark.asyncio
async def test_limiter_failure_fails_closed_when_configured(monkeypatch) -> None:
    monkeypatch.setenv("RL_FAIL_MODE", "closed")
    rate_limit.set_rate_limiter(RedisRateLimiter(redis=FakeRedis(fail=True), prefix="rl"))

    with pytest.raises(HTTPException) as excinfo:
        await enforce_rate_limit(_request({"X-User-Id": "u1"}), Response())

    assert excinfo.value.status_code == 503
    assert excinfo.value.detail["code"] == "RATE_LIMIT_UNAVAILABLE"


@pytest.mark.asyncio
async def test_disabled_limiter_is_a_no_op(monkeypatch) -> None:
    monkeypatch.setenv("RATE_LIMIT_ENABLED", "false")
    rate_limit.set_rate_limiter(FailingLimiter())
    response = Response()

    await enforce_rate_limit(_request(), response)

    assert "X-RateLimit-Limit" not in response.headers
