from __future__ import annotations

from datetime import date

from sqlalchemy import or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from lexybrain.domain.models import (
    Keyword,
    KeywordMetricDaily,
    KeywordMetricWeekly,
    KeywordPrediction,
    RiskEvent,
    RiskRule,
)


async def list_keywords(session: AsyncSession, keyword_ids: list[str]) -> list[Keyword]:
    if not keyword_ids:
        return []
    result = await session.execute(select(Keyword).where(Keyword.id.in_(keyword_ids)))
    return list(result.scalars().all())


async def list_daily_metrics(
    session: AsyncSession, keyword_ids: list[str], *, since: date
) -> list[KeywordMetricDaily]:
    stmt = (
        select(KeywordMetricDaily)
        .where(
            KeywordMetricDaily.keyword_id.in_(keyword_ids),
            KeywordMetricDaily.collected_on >= since,
        )
        .order_by(KeywordMetricDaily.collected_on.desc(), KeywordMetricDaily.id.desc())
    )
    result = await session.execute(stmt)
    return list(result.scalars().all())


async def list_weekly_metrics(
    session: AsyncSession, keyword_ids: list[str], *, limit: int
) -> list[KeywordMetricWeekly]:
    stmt = (
        select(KeywordMetricWeekly)
        .where(KeywordMetricWeekly.keyword_id.in_(keyword_ids))
        .order_by(KeywordMetricWeekly.week_start.desc(), KeywordMetricWeekly.id.desc())
        .limit(limit)
    )
    result = await session.execute(stmt)
    return list(result.scalars().all())


async def list_predictions(
    session: AsyncSession,
    keyword_ids: list[str],
    *,
    marketplace: str | None,
    limit: int,
) -> list[KeywordPrediction]:
    stmt = select(KeywordPrediction).where(KeywordPrediction.keyword_id.in_(keyword_ids))
    if marketplace:
        stmt = stmt.where(KeywordPrediction.marketplace == marketplace)
    stmt = stmt.order_by(KeywordPrediction.created_at.desc(), KeywordPrediction.id.desc()).limit(limit)
    result = await session.execute(stmt)
    return list(result.scalars().all())


async def list_risk_rules(session: AsyncSession, *, marketplace: str | None) -> list[RiskRule]:
    stmt = select(RiskRule)
    if marketplace:
        # Global rules carry a null marketplace and always apply.
        stmt = stmt.where(or_(RiskRule.marketplace.is_(None), RiskRule.marketplace == marketplace))
    stmt = stmt.order_by(RiskRule.id.asc())
    result = await session.execute(stmt)
    return list(result.scalars().all())


async def list_risk_events(
    session: AsyncSession,
    keyword_ids: list[str],
    *,
    marketplace: str | None,
    limit: int,
) -> list[RiskEvent]:
    stmt = select(RiskEvent)
    if keyword_ids:
        stmt = stmt.where(RiskEvent.keyword_id.in_(keyword_ids))
    if marketplace:
        stmt = stmt.where(or_(RiskEvent.marketplace.is_(None), RiskEvent.marketplace == marketplace))
    stmt = stmt.order_by(RiskEvent.occurred_at.desc(), RiskEvent.id.asc()).limit(limit)
    result = await session.execute(stmt)
    return list(result.scalars().all())
