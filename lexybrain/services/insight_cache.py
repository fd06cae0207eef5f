from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
import logging
from typing import Any, Callable, Protocol

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from lexybrain.core.errors import StoreUnavailable
from lexybrain.persistence.repos import insights as insights_repo


logger = logging.getLogger(__name__)

STATUS_READY = "ready"


@dataclass(frozen=True)
class CacheEntry:
    output_type: str
    input_hash: str
    output: dict[str, Any]
    status: str
    generated_at: datetime
    expires_at: datetime
    user_id: str | None = None
    context: dict[str, Any] | None = None


class CacheBackend(Protocol):
    async def fetch(self, output_type: str, input_hash: str) -> CacheEntry | None:
        ...

    async def upsert(self, entry: CacheEntry, *, ttl_minutes: int) -> None:
        ...


class SqlCacheBackend:
    def __init__(self, session_factory: Callable[[], AsyncSession]) -> None:
        self._session_factory = session_factory

    async def fetch(self, output_type: str, input_hash: str) -> CacheEntry | None:
        # Return the stored row as a cache entry, or None.
        async with self._session_factory() as session:
            row = await insights_repo.get_insight(session, output_type, input_hash)
        if row is None:
            return None
        return CacheEntry(
            output_type=row.type,
            input_hash=row.input_hash,
            output=row.output_json,
            status=row.status,
            generated_at=row.generated_at,
            expires_at=row.expires_at,
            user_id=row.user_id,
            context=row.context_json,
        )

    async def upsert(self, entry: CacheEntry, *, ttl_minutes: int) -> None:
        # Upsert on (type, input_hash); the last writer wins.
        async with self._session_factory() as session:
            await insights_repo.upsert_insight(
                session,
                insight_type=entry.output_type,
                input_hash=entry.input_hash,
                user_id=entry.user_id,
                context_json=entry.context or {},
                output_json=entry.output,
                ttl_minutes=ttl_minutes,
                generated_at=entry.generated_at,
                expires_at=entry.expires_at,
            )
            await session.commit()


class InsightCache:
    def __init__(self, backend: CacheBackend, *, time_provider: Callable[[], datetime] | None = None) -> None:
        self._backend = backend
        self._time_provider = time_provider or _utc_now

    async def get(self, output_type: str, input_hash: str) -> CacheEntry | None:
        # Only ready, unexpired rows count as hits.
        try:
            entry = await self._backend.fetch(output_type, input_hash)
        except SQLAlchemyError as exc:
            # A failed read is a miss; generation proceeds and rewrites the row.
            logger.warning("insight_cache_read_failed type=%s input_hash=%s", output_type, input_hash, exc_info=exc)
            return None
        if entry is None or entry.status != STATUS_READY:
            return None
        # Lazy expiry: stale rows stay until overwritten.
        if entry.expires_at <= self._time_provider():
            logger.debug("insight_cache_expired type=%s input_hash=%s", output_type, input_hash)
            return None
        return entry

    async def put(
        self,
        output_type: str,
        input_hash: str,
        *,
        user_id: str | None,
        context: dict[str, Any],
        output: dict[str, Any],
        ttl_minutes: int,
    ) -> CacheEntry:
        # Store a fresh entry with its expiry computed from the TTL.
        now = self._time_provider()
        entry = CacheEntry(
            output_type=output_type,
            input_hash=input_hash,
            output=output,
            status=STATUS_READY,
            generated_at=now,
            expires_at=now + timedelta(minutes=ttl_minutes),
            user_id=user_id,
            context=context,
        )
        try:
            await self._backend.upsert(entry, ttl_minutes=ttl_minutes)
        except SQLAlchemyError as exc:
            raise StoreUnavailable("Failed to store generated insight") from exc
        return entry


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)
