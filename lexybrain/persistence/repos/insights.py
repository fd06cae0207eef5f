from __future__ import annotations

from datetime import datetime
from typing import Any

from sqlalchemy import select
from sqlalchemy.dialects.postgresql import insert
from sqlalchemy.ext.asyncio import AsyncSession

from lexybrain.domain.models import AiInsight


async def get_insight(session: AsyncSession, insight_type: str, input_hash: str) -> AiInsight | None:
    result = await session.execute(
        select(AiInsight).where(AiInsight.type == insight_type, AiInsight.input_hash == input_hash)
    )
    return result.scalar_one_or_none()


async def upsert_insight(
    session: AsyncSession,
    *,
    insight_type: str,
    input_hash: str,
    user_id: str | None,
    context_json: dict[str, Any],
    output_json: dict[str, Any],
    ttl_minutes: int,
    generated_at: datetime,
    expires_at: datetime,
) -> None:
    values = {
        "type": insight_type,
        "input_hash": input_hash,
        "user_id": user_id,
        "context_json": context_json,
        "output_json": output_json,
        "status": "ready",
        "ttl_minutes": ttl_minutes,
        "generated_at": generated_at,
        "expires_at": expires_at,
    }
    stmt = insert(AiInsight).values(**values)
    # Last write wins for concurrent generations of the same input.
    stmt = stmt.on_conflict_do_update(
        index_elements=[AiInsight.type, AiInsight.input_hash],
        set_={key: stmt.excluded[key] for key in values if key not in {"type", "input_hash"}},
    )
    await session.execute(stmt)
