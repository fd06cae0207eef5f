from __future__ import annotations

from datetime import date, datetime
from typing import Any

from sqlalchemy import Select, func, select
from sqlalchemy.dialects.postgresql import insert
from sqlalchemy.ext.asyncio import AsyncSession

from lexybrain.domain.models import AiUsageEvent, UsageCounter


async def get_counter_value(session: AsyncSession, user_id: str, period_start: date, key: str) -> int:
    result = await session.execute(
        select(UsageCounter.value).where(
            UsageCounter.user_id == user_id,
            UsageCounter.period_start == period_start,
            UsageCounter.key == key,
        )
    )
    value = result.scalar_one_or_none()
    return int(value or 0)


async def lock_counter(session: AsyncSession, user_id: str, period_start: date, key: str) -> UsageCounter:
    # Seed a zero row so concurrent first writers still serialize on one row lock.
    seed = insert(UsageCounter).values(user_id=user_id, period_start=period_start, key=key, value=0)
    seed = seed.on_conflict_do_nothing(
        index_elements=[UsageCounter.user_id, UsageCounter.period_start, UsageCounter.key]
    )
    await session.execute(seed)
    result = await session.execute(counter_lock_stmt(user_id, period_start, key))
    return result.scalar_one()


def counter_lock_stmt(user_id: str, period_start: date, key: str) -> Select:
    # Row lock held until the surrounding transaction ends.
    return (
        select(UsageCounter)
        .where(
            UsageCounter.user_id == user_id,
            UsageCounter.period_start == period_start,
            UsageCounter.key == key,
        )
        .with_for_update()
    )


async def insert_usage_event(session: AsyncSession, **values: Any) -> None:
    session.add(AiUsageEvent(**values))
    await session.flush()


async def sum_fresh_cost_since(session: AsyncSession, since: datetime) -> int:
    # Only generations that reached the model count toward spend.
    result = await session.execute(
        select(func.coalesce(func.sum(AiUsageEvent.cost_cents), 0)).where(
            AiUsageEvent.ts >= since,
            AiUsageEvent.cache_hit.is_(False),
        )
    )
    return int(result.scalar_one() or 0)
