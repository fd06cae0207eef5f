from __future__ import annotations

from dataclasses import asdict, dataclass
from datetime import datetime
import logging
from typing import Callable, Protocol

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from lexybrain.core.errors import StoreUnavailable
from lexybrain.persistence.repos import usage as usage_repo


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class UsageEvent:
    user_id: str | None
    type: str
    capability: str | None
    cache_hit: bool
    latency_ms: int
    tokens_in: int | None
    tokens_out: int | None
    cost_cents: int
    model_version: str | None
    plan_code: str | None
    ts: datetime


class UsageRecorder(Protocol):
    async def record(self, event: UsageEvent) -> None:
        ...

    async def fresh_cost_since(self, since: datetime) -> int:
        ...


class SqlUsageStore:
    def __init__(self, session_factory: Callable[[], AsyncSession]) -> None:
        self._session_factory = session_factory

    async def record(self, event: UsageEvent) -> None:
        # Append-only; a failed write surfaces to the caller.
        try:
            async with self._session_factory() as session:
                await usage_repo.insert_usage_event(session, **asdict(event))
                await session.commit()
        except SQLAlchemyError as exc:
            # Usage rows back billing and the daily cap; never drop them silently.
            logger.error("usage_event_write_failed user_id=%s type=%s", event.user_id, event.type)
            raise StoreUnavailable("Failed to record AI usage") from exc

    async def fresh_cost_since(self, since: datetime) -> int:
        # Spend from generations that reached the model.
        async with self._session_factory() as session:
            return await usage_repo.sum_fresh_cost_since(session, since)
