from __future__ import annotations

import logging
from typing import Any, Callable

from sqlalchemy import bindparam, text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession
from pgvector.sqlalchemy import Vector

from lexybrain.core.config import EMBED_DIM
from lexybrain.core.errors import RetrievalError
from lexybrain.ingestion.embeddings import embed_text
from lexybrain.providers.retrieval.base import RetrievedChunk


logger = logging.getLogger(__name__)

# Fusion ranking lives in the database; this call only supplies filters and the query vector.
_RRF_SEARCH_SQL = text(
    """
    SELECT id, owner_scope, owner_user_id, source_type, source_ref, marketplace, language,
           chunk, metadata, combined_score, lexical_rank, vector_rank
    FROM ai_corpus_rrf_search(
        :p_query,
        CAST(:p_query_embedding AS vector),
        :p_capability,
        :p_marketplace,
        :p_language,
        :p_limit
    )
    """
).bindparams(bindparam("p_query_embedding", type_=Vector(EMBED_DIM)))


class HybridCorpusRetriever:
    def __init__(self, session_factory: Callable[[], AsyncSession]) -> None:
        self._session_factory = session_factory

    async def retrieve(
        self,
        query_text: str,
        capability: str,
        marketplace: str | None,
        language: str | None,
        limit: int,
    ) -> list[RetrievedChunk]:
        if limit <= 0:
            return []
        query = (query_text or "").strip()
        embedding = embed_text(query) if query else None
        if embedding is not None and len(embedding) != EMBED_DIM:
            # Fail fast rather than let the store reject a mismatched vector.
            raise RetrievalError("query embedding dimension mismatch")

        params = {
            "p_query": query or None,
            "p_query_embedding": embedding,
            "p_capability": capability,
            "p_marketplace": marketplace,
            "p_language": language,
            "p_limit": int(limit),
        }
        try:
            async with self._session_factory() as session:
                result = await session.execute(_RRF_SEARCH_SQL, params)
                rows = result.mappings().all()
        except SQLAlchemyError as exc:
            raise RetrievalError("corpus hybrid search failed") from exc

        chunks: list[RetrievedChunk] = []
        for row in rows:
            chunk = _to_chunk(row)
            if chunk is None:
                continue
            chunks.append(chunk)
            if len(chunks) >= limit:
                break
        logger.debug("corpus_retrieved capability=%s count=%s", capability, len(chunks))
        return chunks


def _to_chunk(row: Any) -> RetrievedChunk | None:
    # Rows without text cannot ground an answer.
    text_value = row.get("chunk")
    if not text_value:
        return None
    return RetrievedChunk(
        id=str(row["id"]),
        owner_scope=row.get("owner_scope") or "global",
        owner_user_id=row.get("owner_user_id"),
        source_type=row.get("source_type") or "unknown",
        source_ref=row.get("source_ref"),
        marketplace=row.get("marketplace"),
        language=row.get("language"),
        chunk=text_value,
        metadata=row.get("metadata") or {},
        combined_score=float(row.get("combined_score") or 0.0),
        lexical_rank=_optional_int(row.get("lexical_rank")),
        vector_rank=_optional_int(row.get("vector_rank")),
    )


def _optional_int(value: Any) -> int | None:
    if value is None:
        return None
    return int(value)
