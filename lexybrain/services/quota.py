from __future__ import annotations

from dataclasses import dataclass
from datetime import date, datetime, timezone
import logging
from typing import Callable, Protocol

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from lexybrain.core.errors import QuotaExceeded, StoreUnavailable
from lexybrain.domain.capabilities import QuotaKey
from lexybrain.persistence.repos import usage as usage_repo
from lexybrain.services.entitlements import UNLIMITED, EntitlementService


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class QuotaStatus:
    # Usage for one quota key in the current monthly period.
    quota_key: str
    used: int
    limit: int
    allowed: bool
    plan_code: str

    @property
    def unlimited(self) -> bool:
        return self.limit == UNLIMITED

    @property
    def percentage(self) -> float:
        # Share of the limit used; 0 for unlimited or zero limits.
        if self.limit <= 0:
            return 0.0
        return round(self.used / self.limit * 100, 2)

    def as_dict(self) -> dict[str, float | int]:
        return {"used": self.used, "limit": self.limit, "percentage": self.percentage}


@dataclass(frozen=True)
class UsageSummary:
    plan_code: str
    quotas: dict[str, QuotaStatus]


class CounterStore(Protocol):
    async def get(self, user_id: str, period_start: date, key: str) -> int:
        ...

    async def consume(self, user_id: str, period_start: date, key: str, amount: int, limit: int) -> tuple[bool, int]:
        ...


class SqlCounterStore:
    def __init__(self, session_factory: Callable[[], AsyncSession]) -> None:
        self._session_factory = session_factory

    async def get(self, user_id: str, period_start: date, key: str) -> int:
        # Read-only view for summaries; never used to decide an increment.
        try:
            async with self._session_factory() as session:
                return await usage_repo.get_counter_value(session, user_id, period_start, key)
        except SQLAlchemyError as exc:
            raise StoreUnavailable("Usage counters are unavailable") from exc

    async def consume(self, user_id: str, period_start: date, key: str, amount: int, limit: int) -> tuple[bool, int]:
        # Check and increment under one row lock; the ceiling holds across concurrent requests.
        try:
            async with self._session_factory() as session:
                async with session.begin():
                    counter = await usage_repo.lock_counter(session, user_id, period_start, key)
                    used = int(counter.value or 0)
                    if used + amount > limit:
                        return False, used
                    counter.value = used + amount
                    return True, counter.value
        except SQLAlchemyError as exc:
            raise StoreUnavailable("Failed to record quota usage") from exc


class QuotaService:
    def __init__(
        self,
        *,
        counters: CounterStore,
        entitlements: EntitlementService,
        time_provider: Callable[[], datetime] | None = None,
    ) -> None:
        self._counters = counters
        self._entitlements = entitlements
        # Allow time injection for deterministic rollover tests.
        self._time_provider = time_provider or _utc_now

    async def check_and_consume(self, user_id: str, quota_key: QuotaKey | str, amount: int = 1) -> QuotaStatus:
        # Unlimited plans short-circuit; everything else goes through the atomic counter.
        key = QuotaKey(quota_key).value
        plan = await self._entitlements.resolve(user_id)
        limit = plan.limits.limit_for(key)
        if limit == UNLIMITED:
            # Unlimited plans are never counted.
            return QuotaStatus(quota_key=key, used=0, limit=UNLIMITED, allowed=True, plan_code=plan.plan_code)

        period_start = month_start(self._time_provider())
        allowed, used = await self._counters.consume(user_id, period_start, key, amount, limit)
        if not allowed:
            logger.info(
                "quota_exceeded user_id=%s key=%s used=%s limit=%s",
                user_id,
                key,
                used,
                limit,
            )
            raise QuotaExceeded(quota_key=key, used=used, limit=limit)

        return QuotaStatus(quota_key=key, used=used, limit=limit, allowed=True, plan_code=plan.plan_code)

    async def check_only(self, user_id: str, quota_key: QuotaKey | str) -> QuotaStatus:
        # Read the current period without consuming.
        key = QuotaKey(quota_key).value
        plan = await self._entitlements.resolve(user_id)
        return await self._status(user_id, key, plan.limits.limit_for(key), plan.plan_code)

    async def usage_summary(self, user_id: str) -> UsageSummary:
        # Status for every quota key on the user's plan.
        plan = await self._entitlements.resolve(user_id)
        quotas: dict[str, QuotaStatus] = {}
        for key in QuotaKey:
            quotas[key.value] = await self._status(user_id, key.value, plan.limits.limit_for(key), plan.plan_code)
        return UsageSummary(plan_code=plan.plan_code, quotas=quotas)

    async def _status(self, user_id: str, key: str, limit: int, plan_code: str) -> QuotaStatus:
        if limit == UNLIMITED:
            return QuotaStatus(quota_key=key, used=0, limit=UNLIMITED, allowed=True, plan_code=plan_code)
        used = await self._counters.get(user_id, month_start(self._time_provider()), key)
        return QuotaStatus(quota_key=key, used=used, limit=limit, allowed=used < limit, plan_code=plan_code)


def _utc_now() -> datetime:
    # Use UTC for consistent quota period boundaries.
    return datetime.now(timezone.utc)


def month_start(now: datetime) -> date:
    # Normalize to the UTC month boundary; all usage in a month shares one counter.
    if now.tzinfo is not None:
        now = now.astimezone(timezone.utc)
    return date(now.year, now.month, 1)
