from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta, timezone
import logging
from typing import Any, Awaitable, Callable, Protocol

from sqlalchemy.ext.asyncio import AsyncSession

from lexybrain.core.errors import NoReliableData
from lexybrain.persistence.repos import keywords as keywords_repo


logger = logging.getLogger(__name__)

DAILY_METRICS_WINDOW_DAYS = 60
WEEKLY_METRICS_LIMIT = 52
PREDICTIONS_LIMIT = 50
RISK_EVENTS_LIMIT = 100

_SCORE_FIELDS = (
    "demand_index",
    "competition_score",
    "trend_momentum",
    "engagement_score",
    "ai_opportunity_score",
)

_MARKETPLACE_ALIASES = {
    "us": "google",
    "usa": "google",
    "google-us": "google",
    "google_us": "google",
    "google:us": "google",
    "etsy-us": "etsy",
    "etsy_us": "etsy",
    "etsy:us": "etsy",
    "amazon-us": "amazon",
    "amazon_us": "amazon",
    "amazon:us": "amazon",
    "shopify-us": "shopify",
    "shopify_us": "shopify",
}


def normalize_marketplace(marketplace: str | None, source: str | None = None) -> str | None:
    # Map free-form marketplace labels onto the known marketplace set.
    value = (marketplace or "").strip().lower()
    if not value:
        # DataForSEO rows are Google search data even when market was never set.
        if (source or "").lower().startswith("dataforseo"):
            return "google"
        return None
    return _MARKETPLACE_ALIASES.get(value, value)


@dataclass
class ContextBundle:
    market: str
    marketplace: str | None
    language: str | None
    scope: str
    keyword_ids: list[str]
    keywords: list[dict[str, Any]]
    niche_terms: list[str]
    query: str | None = None
    budget_cents: int | None = None
    metrics: dict[str, list[dict[str, Any]]] = field(default_factory=lambda: {"daily": [], "weekly": []})
    predictions: list[dict[str, Any]] = field(default_factory=list)
    risk: dict[str, list[dict[str, Any]]] = field(default_factory=lambda: {"rules": [], "events": []})
    extra: dict[str, Any] = field(default_factory=dict)

    @property
    def terms(self) -> list[str]:
        # Keyword terms in request order.
        return [keyword["term"] for keyword in self.keywords]

    @property
    def query_text(self) -> str:
        return " ".join([self.query or "", *self.terms]).strip()

    def keyword_scores(self) -> list[dict[str, Any]]:
        # Per-keyword score tuples handed to the prompt.
        return [
            {"term": keyword["term"], **{name: keyword.get(name) for name in _SCORE_FIELDS}}
            for keyword in self.keywords
        ]

    def metadata(self) -> dict[str, Any]:
        # Signals kept alongside the bundle for references and the prompt.
        return {
            "metrics": self.metrics,
            "predictions": self.predictions,
            "risk": self.risk,
            **self.extra,
        }


class KeywordDataSource(Protocol):
    async def keywords(self, keyword_ids: list[str]) -> list[dict[str, Any]]:
        ...

    async def daily_metrics(self, keyword_ids: list[str], since: date) -> list[dict[str, Any]]:
        ...

    async def weekly_metrics(self, keyword_ids: list[str], limit: int) -> list[dict[str, Any]]:
        ...

    async def predictions(self, keyword_ids: list[str], marketplace: str | None, limit: int) -> list[dict[str, Any]]:
        ...

    async def risk_rules(self, marketplace: str | None) -> list[dict[str, Any]]:
        ...

    async def risk_events(self, keyword_ids: list[str], marketplace: str | None, limit: int) -> list[dict[str, Any]]:
        ...


class SqlKeywordDataSource:
    # Each read opens its own session so reads can run concurrently.
    def __init__(self, session_factory: Callable[[], AsyncSession]) -> None:
        self._session_factory = session_factory

    async def keywords(self, keyword_ids: list[str]) -> list[dict[str, Any]]:
        # Keyword rows flattened into plain dicts for the prompt.
        async with self._session_factory() as session:
            rows = await keywords_repo.list_keywords(session, keyword_ids)
        return [
            {
                "id": row.id,
                "term": row.term,
                "market": row.market,
                "source": row.source,
                "demand_index": row.demand_index,
                "competition_score": row.competition_score,
                "trend_momentum": row.trend_momentum,
                "engagement_score": row.engagement_score,
                "ai_opportunity_score": row.ai_opportunity_score,
                "extras": row.extras or {},
            }
            for row in rows
        ]

    async def daily_metrics(self, keyword_ids: list[str], since: date) -> list[dict[str, Any]]:
        # Most recent daily metrics within the lookback window.
        async with self._session_factory() as session:
            rows = await keywords_repo.list_daily_metrics(session, keyword_ids, since=since)
        return [
            {
                "keyword_id": row.keyword_id,
                "collected_on": row.collected_on.isoformat(),
                "volume": row.volume,
                "competition_score": row.competition_score,
                "engagement": row.engagement,
                "social_mentions": row.social_mentions,
                "social_sentiment": row.social_sentiment,
            }
            for row in rows
        ]

    async def weekly_metrics(self, keyword_ids: list[str], limit: int) -> list[dict[str, Any]]:
        # Weekly rollups, newest first.
        async with self._session_factory() as session:
            rows = await keywords_repo.list_weekly_metrics(session, keyword_ids, limit=limit)
        return [
            {
                "keyword_id": row.keyword_id,
                "week_start": row.week_start.isoformat(),
                "source": row.source,
                "metrics": row.metrics or {},
            }
            for row in rows
        ]

    async def predictions(self, keyword_ids: list[str], marketplace: str | None, limit: int) -> list[dict[str, Any]]:
        async with self._session_factory() as session:
            rows = await keywords_repo.list_predictions(session, keyword_ids, marketplace=marketplace, limit=limit)
        return [
            {
                "keyword_id": row.keyword_id,
                "marketplace": row.marketplace,
                "horizon": row.horizon,
                "metrics": row.metrics or {},
                "created_at": row.created_at.isoformat() if row.created_at else None,
            }
            for row in rows
        ]

    async def risk_rules(self, marketplace: str | None) -> list[dict[str, Any]]:
        # Rules scoped to the marketplace plus global rules.
        async with self._session_factory() as session:
            rows = await keywords_repo.list_risk_rules(session, marketplace=marketplace)
        return [
            {
                "id": row.id,
                "rule_code": row.rule_code,
                "description": row.description,
                "marketplace": row.marketplace,
                "severity": row.severity,
                "metadata": row.metadata_json or {},
            }
            for row in rows
        ]

    async def risk_events(self, keyword_ids: list[str], marketplace: str | None, limit: int) -> list[dict[str, Any]]:
        async with self._session_factory() as session:
            rows = await keywords_repo.list_risk_events(session, keyword_ids, marketplace=marketplace, limit=limit)
        return [
            {
                "id": row.id,
                "keyword_id": row.keyword_id,
                "rule_id": row.rule_id,
                "marketplace": row.marketplace,
                "occurred_at": row.occurred_at.isoformat() if row.occurred_at else None,
                "details": row.details or {},
                "scope": row.scope,
            }
            for row in rows
        ]


class ContextAssembler:
    def __init__(
        self,
        source: KeywordDataSource,
        *,
        time_provider: Callable[[], datetime] | None = None,
    ) -> None:
        self._source = source
        self._time_provider = time_provider or _utc_now

    async def assemble(
        self,
        scope: str,
        keyword_ids: list[str] | None,
        marketplace: str | None,
        language: str | None,
        *,
        query: str | None = None,
        niche_terms: list[str] | None = None,
        budget_cents: int | None = None,
    ) -> ContextBundle:
        # Resolve keywords first, then fan out the optional reads.
        ids = dedupe_ids(keyword_ids or [])
        keywords = await self._safe_fetch("keywords", self._source.keywords(ids), []) if ids else []
        if ids and not keywords:
            # Never generate from nothing when the caller named specific keywords.
            raise NoReliableData("No reliable data: none of the requested keywords were found.")
        keywords = [_enrich_keyword(keyword) for keyword in keywords]

        request_marketplace = normalize_marketplace(marketplace)
        resolved_marketplace = request_marketplace
        if resolved_marketplace is None and keywords:
            resolved_marketplace = keywords[0].get("market")

        since = (self._time_provider() - timedelta(days=DAILY_METRICS_WINDOW_DAYS)).date()
        resolved_ids = [keyword["id"] for keyword in keywords]
        daily, weekly, predictions, rules, events = await asyncio.gather(
            self._keyword_scoped("daily_metrics", resolved_ids, lambda: self._source.daily_metrics(resolved_ids, since)),
            self._keyword_scoped(
                "weekly_metrics", resolved_ids, lambda: self._source.weekly_metrics(resolved_ids, WEEKLY_METRICS_LIMIT)
            ),
            self._keyword_scoped(
                "predictions",
                resolved_ids,
                lambda: self._source.predictions(resolved_ids, request_marketplace, PREDICTIONS_LIMIT),
            ),
            self._safe_fetch("risk_rules", self._source.risk_rules(request_marketplace), []),
            self._safe_fetch(
                "risk_events",
                self._source.risk_events(resolved_ids, request_marketplace, RISK_EVENTS_LIMIT),
                [],
            ),
        )

        terms = [keyword["term"] for keyword in keywords]
        bundle_niche = _normalize_terms(niche_terms) if niche_terms else list(terms)
        return ContextBundle(
            market=resolved_marketplace or (keywords[0].get("market") if keywords else None) or "global",
            marketplace=resolved_marketplace,
            language=language,
            scope=scope,
            keyword_ids=resolved_ids,
            keywords=keywords,
            niche_terms=bundle_niche,
            query=(query or "").strip() or None,
            budget_cents=budget_cents,
            metrics={"daily": daily, "weekly": weekly},
            predictions=predictions,
            risk={"rules": rules, "events": events},
        )

    async def _keyword_scoped(
        self,
        name: str,
        keyword_ids: list[str],
        fetch: Callable[[], Awaitable[list[dict[str, Any]]]],
    ) -> list[dict[str, Any]]:
        # Skip keyword-scoped reads when the request names no keywords.
        if not keyword_ids:
            return []
        return await self._safe_fetch(name, fetch(), [])

    async def _safe_fetch(self, name: str, awaitable: Awaitable[Any], default: Any) -> Any:
        # Optional context degrades to empty; one failed read never aborts the others.
        try:
            return await awaitable
        except Exception as exc:  # noqa: BLE001 - optional context is best-effort
            logger.warning("context_fetch_failed source=%s", name, exc_info=exc)
            return default


def dedupe_ids(keyword_ids: list[str]) -> list[str]:
    # Drop blanks and duplicates, keeping first-seen order.
    seen: dict[str, None] = {}
    for keyword_id in keyword_ids:
        if isinstance(keyword_id, str) and keyword_id.strip():
            seen.setdefault(keyword_id.strip(), None)
    return list(seen)


def _normalize_terms(terms: list[str]) -> list[str]:
    # Lowercased, trimmed and deduped in first-seen order.
    seen: dict[str, None] = {}
    for term in terms:
        if isinstance(term, str) and term.strip():
            seen.setdefault(term.strip().lower(), None)
    return list(seen)


def _enrich_keyword(keyword: dict[str, Any]) -> dict[str, Any]:
    # Backfill demand and competition from DataForSEO extras when missing.
    keyword = dict(keyword)
    extras = keyword.get("extras") or {}
    dataforseo = extras.get("dataforseo") if isinstance(extras, dict) else None
    if isinstance(dataforseo, dict):
        if keyword.get("demand_index") is None:
            volume = dataforseo.get("search_volume")
            if volume is None:
                monthly = dataforseo.get("monthly_searches") or []
                if monthly and isinstance(monthly[0], dict):
                    volume = monthly[0].get("search_volume")
            if isinstance(volume, (int, float)):
                keyword["demand_index"] = min(volume / 100000, 1.0)
        if keyword.get("competition_score") is None:
            competition = dataforseo.get("competition")
            if competition is None:
                competition = dataforseo.get("competition_index")
            if competition is not None:
                try:
                    keyword["competition_score"] = float(competition)
                except (TypeError, ValueError):
                    logger.debug("keyword_competition_unparseable keyword_id=%s", keyword.get("id"))
    source = keyword.get("source") or (extras.get("source") if isinstance(extras, dict) else None)
    keyword["market"] = normalize_marketplace(keyword.get("market"), source if isinstance(source, str) else None)
    return keyword


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)
