from __future__ import annotations

from dataclasses import dataclass
import logging
from typing import Any, Callable, Protocol

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from lexybrain.core.errors import StoreUnavailable
from lexybrain.persistence.repos import audit as audit_repo


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SnapshotRecord:
    keyword_id: str | None
    capability: str
    scope: str
    metrics_used: dict[str, Any]
    insight: dict[str, Any]
    references: list[dict[str, Any]]
    created_by: str | None


class SnapshotStore(Protocol):
    async def write(self, records: list[SnapshotRecord]) -> list[str]:
        ...


class SqlSnapshotStore:
    def __init__(self, session_factory: Callable[[], AsyncSession]) -> None:
        self._session_factory = session_factory

    async def write(self, records: list[SnapshotRecord]) -> list[str]:
        # Insert one snapshot row and return its id.
        if not records:
            return []
        rows = [
            {
                "keyword_id": record.keyword_id,
                "capability": record.capability,
                "scope": record.scope,
                "metrics_used": record.metrics_used,
                "insight": record.insight,
                "references": record.references,
                "created_by": record.created_by,
            }
            for record in records
        ]
        try:
            async with self._session_factory() as session:
                ids = await audit_repo.insert_snapshots(session, rows)
                await session.commit()
        except SQLAlchemyError as exc:
            logger.error("insight_snapshot_write_failed capability=%s count=%s", records[0].capability, len(records))
            raise StoreUnavailable("Failed to store insight snapshot") from exc
        return [str(snapshot_id) for snapshot_id in ids]


def snapshot_records(
    *,
    keyword_ids: list[str],
    capability: str,
    scope: str,
    metrics_used: dict[str, Any],
    insight: dict[str, Any],
    references: list[dict[str, Any]],
    created_by: str | None,
) -> list[SnapshotRecord]:
    # One row per keyword; keyword-less requests still leave a single audit row.
    targets: list[str | None] = list(keyword_ids) or [None]
    return [
        SnapshotRecord(
            keyword_id=keyword_id,
            capability=capability,
            scope=scope,
            metrics_used=metrics_used,
            insight=insight,
            references=references,
            created_by=created_by,
        )
        for keyword_id in targets
    ]
