from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Protocol


@dataclass(frozen=True)
class RetrievedChunk:
    # Corpus row plus the ranking produced for this query.
    id: str
    owner_scope: str
    source_type: str
    chunk: str
    combined_score: float
    lexical_rank: int | None = None
    vector_rank: int | None = None
    owner_user_id: str | None = None
    marketplace: str | None = None
    language: str | None = None
    source_ref: dict[str, Any] | None = None
    metadata: dict[str, Any] = field(default_factory=dict)


class CorpusRetriever(Protocol):
    async def retrieve(
        self,
        query_text: str,
        capability: str,
        marketplace: str | None,
        language: str | None,
        limit: int,
    ) -> list[RetrievedChunk]:
        ...
