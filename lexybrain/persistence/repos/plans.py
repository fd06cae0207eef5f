from __future__ import annotations

from sqlalchemy import select
from sqlalchemy.dialects.postgresql import insert
from sqlalchemy.ext.asyncio import AsyncSession

from lexybrain.domain.models import AiPrompt, PlanEntitlement, UserProfile


async def get_user_plan(session: AsyncSession, user_id: str) -> str | None:
    result = await session.execute(select(UserProfile.plan).where(UserProfile.user_id == user_id))
    return result.scalar_one_or_none()


async def get_plan_entitlement(session: AsyncSession, plan_code: str) -> PlanEntitlement | None:
    result = await session.execute(select(PlanEntitlement).where(PlanEntitlement.plan_code == plan_code))
    return result.scalar_one_or_none()


async def get_active_prompt(session: AsyncSession, key: str) -> AiPrompt | None:
    result = await session.execute(
        select(AiPrompt)
        .where(AiPrompt.key == key, AiPrompt.is_active.is_(True))
        .order_by(AiPrompt.updated_at.desc())
        .limit(1)
    )
    return result.scalar_one_or_none()


async def upsert_plan_entitlement(
    session: AsyncSession,
    *,
    plan_code: str,
    ai_calls_per_month: int,
    briefs_per_month: int,
    sims_per_month: int,
) -> None:
    values = {
        "plan_code": plan_code,
        "ai_calls_per_month": ai_calls_per_month,
        "briefs_per_month": briefs_per_month,
        "sims_per_month": sims_per_month,
    }
    stmt = insert(PlanEntitlement).values(**values)
    stmt = stmt.on_conflict_do_update(
        index_elements=[PlanEntitlement.plan_code],
        set_={key: stmt.excluded[key] for key in values if key != "plan_code"},
    )
    await session.execute(stmt)
