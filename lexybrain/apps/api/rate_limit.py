from __future__ import annotations

import asyncio
from dataclasses import dataclass
import logging
import math
import time
from typing import Callable, Protocol

from fastapi import HTTPException, Request, Response, status
from redis.asyncio import Redis

from lexybrain.core.config import get_settings


logger = logging.getLogger(__name__)

TIER_ANONYMOUS = "anonymous"
TIER_AUTHENTICATED = "authenticated"
TIER_PREMIUM = "premium"

_PREMIUM_PLANS = {"scale", "premium"}


@dataclass(frozen=True)
class RateLimitDecision:
    allowed: bool
    limit: int
    remaining: int
    retry_after_s: int


class RateLimiter(Protocol):
    async def hit(self, key: str, *, limit: int, window_s: int) -> RateLimitDecision:
        ...


def _decision(count: int, *, limit: int, window_s: int, now: float) -> RateLimitDecision:
    # Remaining budget and seconds until the window resets.
    window_end = (math.floor(now / window_s) + 1) * window_s
    return RateLimitDecision(
        allowed=count <= limit,
        limit=limit,
        remaining=max(limit - count, 0),
        retry_after_s=max(1, int(math.ceil(window_end - now))),
    )


class InMemoryRateLimiter:
    # Process-local fixed windows; counts reset on restart and are not shared across workers.
    def __init__(self, *, time_provider: Callable[[], float] | None = None) -> None:
        self._time_provider = time_provider or time.time
        # key -> (window index, count, window end)
        self._windows: dict[str, tuple[int, int, float]] = {}
        self._next_sweep = 0.0

    def tracked_windows(self) -> int:
        return len(self._windows)

    async def hit(self, key: str, *, limit: int, window_s: int) -> RateLimitDecision:
        # Count the hit in the current fixed window.
        now = self._time_provider()
        if now >= self._next_sweep:
            self._sweep(now)
        window = int(now // window_s)
        current_window, count, _ = self._windows.get(key, (window, 0, 0.0))
        if current_window != window:
            count = 0
        count += 1
        ends_at = float((window + 1) * window_s)
        self._windows[key] = (window, count, ends_at)
        self._next_sweep = min(self._next_sweep, ends_at)
        return _decision(count, limit=limit, window_s=window_s, now=now)

    def _sweep(self, now: float) -> None:
        # Drop windows that have already closed so idle keys do not accumulate.
        expired = [key for key, (_, _, ends_at) in self._windows.items() if ends_at <= now]
        for key in expired:
            del self._windows[key]
        self._next_sweep = min((ends_at for _, _, ends_at in self._windows.values()), default=math.inf)


_redis_pool: Redis | None = None
_redis_loop: asyncio.AbstractEventLoop | None = None
_redis_lock = asyncio.Lock()


async def _get_redis() -> Redis:
    # Cache Redis connections per event loop.
    global _redis_pool, _redis_loop
    current_loop = asyncio.get_running_loop()
    if _redis_pool is not None and _redis_loop == current_loop:
        return _redis_pool
    if _redis_pool is not None and _redis_loop != current_loop:
        _redis_pool = None
    async with _redis_lock:
        if _redis_pool is None:
            settings = get_settings()
            _redis_pool = Redis.from_url(settings.redis_url, encoding="utf-8", decode_responses=True)
            _redis_loop = current_loop
    return _redis_pool


class RedisRateLimiter:
    def __init__(
        self,
        *,
        redis: Redis | None = None,
        prefix: str | None = None,
        time_provider: Callable[[], float] | None = None,
    ) -> None:
        self._redis = redis
        self._prefix = prefix or get_settings().rl_redis_prefix
        self._time_provider = time_provider or time.time

    async def hit(self, key: str, *, limit: int, window_s: int) -> RateLimitDecision:
        # INCR then set the expiry on the first hit of a window.
        now = self._time_provider()
        bucket = f"{self._prefix}:{key}:{int(now // window_s)}"
        redis = self._redis or await _get_redis()
        count = int(await redis.incr(bucket))
        if count == 1:
            # The first hit in a window owns the expiry.
            await redis.expire(bucket, window_s)
        return _decision(count, limit=limit, window_s=window_s, now=now)


_rate_limiter: RateLimiter | None = None


def get_rate_limiter() -> RateLimiter:
    # Backend chosen from settings on first use.
    global _rate_limiter
    if _rate_limiter is None:
        backend = get_settings().rate_limit_backend.lower()
        _rate_limiter = RedisRateLimiter() if backend == "redis" else InMemoryRateLimiter()
    return _rate_limiter


def set_rate_limiter(limiter: RateLimiter | None) -> None:
    global _rate_limiter
    _rate_limiter = limiter


def reset_rate_limiter_state() -> None:
    global _rate_limiter, _redis_pool, _redis_loop
    _rate_limiter = None
    _redis_pool = None
    _redis_loop = None


def identify(request: Request) -> tuple[str, str]:
    # Authenticated callers are keyed by user id, others by client IP.
    settings = get_settings()
    user_id = (request.headers.get(settings.auth_user_header) or "").strip()
    if not user_id:
        forwarded = request.headers.get("X-Forwarded-For") or request.headers.get("X-Real-Ip")
        client_ip = forwarded.split(",")[0].strip() if forwarded else (request.client.host if request.client else "anonymous")
        return f"ip:{client_ip}", TIER_ANONYMOUS
    plan = (request.headers.get(settings.auth_plan_header) or "").strip().lower()
    if plan in _PREMIUM_PLANS:
        return f"user:{user_id}", TIER_PREMIUM
    return f"user:{user_id}", TIER_AUTHENTICATED


def _limit_for_tier(tier: str) -> int:
    settings = get_settings()
    if tier == TIER_ANONYMOUS:
        return settings.rl_anonymous_requests_per_window
    if tier == TIER_PREMIUM:
        return settings.rl_premium_requests_per_window
    return settings.rl_ext_requests_per_window


def _throttle_exception(decision: RateLimitDecision, tier: str) -> HTTPException:
    # 429 with Retry-After and limit headers.
    return HTTPException(
        status_code=status.HTTP_429_TOO_MANY_REQUESTS,
        detail={
            "code": "RATE_LIMITED",
            "message": "Rate limit exceeded",
            "tier": tier,
            "limit": decision.limit,
            "retry_after_s": decision.retry_after_s,
        },
        headers={
            "Retry-After": str(decision.retry_after_s),
            "X-RateLimit-Limit": str(decision.limit),
            "X-RateLimit-Remaining": "0",
        },
    )


async def enforce_rate_limit(request: Request, response: Response) -> None:
    # Limit extension traffic per tier, caller and route.
    settings = get_settings()
    if not settings.rate_limit_enabled:
        return

    identifier, tier = identify(request)
    limit = _limit_for_tier(tier)
    key = f"{tier}:{identifier}:{request.url.path}"
    try:
        decision = await get_rate_limiter().hit(key, limit=limit, window_s=max(settings.rl_window_seconds, 1))
    except Exception as exc:  # noqa: BLE001 - guard against Redis connectivity failures
        if settings.rl_fail_mode.lower() == "closed":
            raise HTTPException(
                status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
                detail={"code": "RATE_LIMIT_UNAVAILABLE", "message": "Rate limiting unavailable"},
            ) from exc
        response.headers["X-RateLimit-Status"] = "degraded"
        logger.warning("rate_limit_degraded path=%s", request.url.path, exc_info=exc)
        return

    if not decision.allowed:
        logger.info("rate_limited identifier=%s tier=%s path=%s", identifier, tier, request.url.path)
        raise _throttle_exception(decision, tier)
    response.headers["X-RateLimit-Limit"] = str(decision.limit)
    response.headers["X-RateLimit-Remaining"] = str(decision.remaining)
