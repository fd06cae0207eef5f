from __future__ import annotations

from typing import Any
from uuid import UUID

from sqlalchemy.ext.asyncio import AsyncSession

from lexybrain.domain.models import AiFailure, InsightSnapshot, Notification


async def insert_snapshots(session: AsyncSession, rows: list[dict[str, Any]]) -> list[UUID]:
    snapshots = [InsightSnapshot(**row) for row in rows]
    session.add_all(snapshots)
    await session.flush()
    return [snapshot.id for snapshot in snapshots]


async def insert_failure(session: AsyncSession, **values: Any) -> None:
    session.add(AiFailure(**values))
    await session.flush()


async def insert_notification(session: AsyncSession, **values: Any) -> UUID:
    notification = Notification(**values)
    session.add(notification)
    await session.flush()
    return notification.id
