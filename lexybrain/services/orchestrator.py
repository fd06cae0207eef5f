from __future__ import annotations

from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
import hashlib
import logging
import time
from typing import Any, Callable

from sqlalchemy.ext.asyncio import AsyncSession

from lexybrain.core.config import get_settings
from lexybrain.core.errors import NoReliableData, RetrievalError
from lexybrain.domain.capabilities import (
    CACHE_TTL_MINUTES,
    Capability,
    CapabilityConfig,
    OutputType,
    get_capability_config,
    quota_key_for,
)
from lexybrain.providers.llm.factory import get_llm_provider
from lexybrain.providers.retrieval.base import CorpusRetriever, RetrievedChunk
from lexybrain.providers.retrieval.hybrid_corpus import HybridCorpusRetriever
from lexybrain.services import background
from lexybrain.services.context import ContextAssembler, ContextBundle, SqlKeywordDataSource
from lexybrain.services.costs import CostCapGuard, estimate_cost_cents
from lexybrain.services.entitlements import EntitlementService, SqlEntitlementSource
from lexybrain.services.generation import InsightGenerator, SqlFailureRecorder, build_generator
from lexybrain.services.insight_cache import InsightCache, SqlCacheBackend
from lexybrain.services.notifications import RiskNotifier, SqlNotificationSink
from lexybrain.services.prompt import PromptSource, SqlPromptSource, load_prompt_config
from lexybrain.services.quota import QuotaService, SqlCounterStore
from lexybrain.services.snapshots import SnapshotStore, SqlSnapshotStore, snapshot_records
from lexybrain.services.usage import SqlUsageStore, UsageEvent, UsageRecorder


logger = logging.getLogger(__name__)

LIMITED_CORPUS_THRESHOLD = 5


@dataclass
class OrchestrationRequest:
    capability: Capability
    user_id: str
    keyword_ids: list[str] = field(default_factory=list)
    query: str | None = None
    marketplace: str | None = None
    language: str | None = None
    scope: str | None = None
    niche_terms: list[str] = field(default_factory=list)
    budget_cents: int | None = None
    metadata: dict[str, Any] = field(default_factory=dict)


@dataclass
class OrchestrationResult:
    capability: str
    output_type: str
    insight: dict[str, Any]
    metrics: dict[str, Any]
    references: list[dict[str, Any]]
    model_metadata: dict[str, Any]
    cache_hit: bool
    snapshot_ids: list[str] = field(default_factory=list)

    def as_dict(self) -> dict[str, Any]:
        return asdict(self)


def compute_input_hash(
    capability: str,
    market: str,
    niche_terms: list[str],
    budget_cents: int | None,
    keyword_terms: list[str],
) -> str:
    # Order- and duplicate-independent over terms; the capability keeps shared output types apart.
    parts = [
        capability,
        (market or "").lower(),
        ",".join(_term_set(niche_terms)),
        str(budget_cents or 0),
        ",".join(_term_set(keyword_terms)),
    ]
    return hashlib.sha256("|".join(parts).encode("utf-8")).hexdigest()


def _term_set(terms: list[str]) -> list[str]:
    # Lowercased, trimmed, deduped and sorted.
    return sorted({term.strip().lower() for term in terms if term and term.strip()})


def _reference_id(*parts: Any) -> str:
    # Stable id for a referenced source row.
    serialized = "|".join("null" if part is None else str(part) for part in parts)
    return hashlib.sha256(serialized.encode("utf-8")).hexdigest()


def build_references(context: ContextBundle, corpus: list[RetrievedChunk]) -> list[dict[str, Any]]:
    # One reference per contributing signal, in a fixed order.
    references: list[dict[str, Any]] = [{"type": "keyword", "id": keyword["id"]} for keyword in context.keywords]
    for entry in context.metrics.get("daily", []):
        references.append(
            {
                "type": "keyword_metrics_daily",
                "id": _reference_id("metric", entry.get("keyword_id"), entry.get("collected_on")),
                "extra": entry,
            }
        )
    for entry in context.metrics.get("weekly", []):
        references.append(
            {
                "type": "keyword_metrics_weekly",
                "id": _reference_id("metric_weekly", entry.get("keyword_id"), entry.get("week_start"), entry.get("source")),
                "extra": entry,
            }
        )
    for prediction in context.predictions:
        references.append(
            {
                "type": "keyword_predictions",
                "id": _reference_id(
                    "prediction", prediction.get("keyword_id"), prediction.get("horizon"), prediction.get("created_at")
                ),
                "extra": prediction,
            }
        )
    for rule in context.risk.get("rules", []):
        if rule.get("id") is not None:
            references.append({"type": "risk_rules", "id": str(rule["id"]), "extra": rule})
    for event in context.risk.get("events", []):
        references.append(
            {
                "type": "risk_events",
                "id": _reference_id("risk_event", event.get("id") or event.get("keyword_id"), event.get("occurred_at")),
                "extra": event,
            }
        )
    for chunk in corpus:
        references.append(
            {
                "type": f"ai_corpus:{chunk.source_type}",
                "id": chunk.id,
                "scope": chunk.owner_scope,
                "score": chunk.combined_score,
                "extra": {
                    "source_ref": chunk.source_ref,
                    "lexical_rank": chunk.lexical_rank,
                    "vector_rank": chunk.vector_rank,
                },
            }
        )
    return references


class InsightOrchestrator:
    def __init__(
        self,
        *,
        entitlements: EntitlementService,
        quota: QuotaService,
        cost_cap: CostCapGuard,
        assembler: ContextAssembler,
        retriever: CorpusRetriever,
        cache: InsightCache,
        generator: InsightGenerator,
        usage: UsageRecorder,
        snapshots: SnapshotStore,
        prompts: PromptSource | None = None,
        notifier: RiskNotifier | None = None,
        model_version: str | None = None,
        time_provider: Callable[[], datetime] | None = None,
    ) -> None:
        self._entitlements = entitlements
        self._quota = quota
        self._cost_cap = cost_cap
        self._assembler = assembler
        self._retriever = retriever
        self._cache = cache
        self._generator = generator
        self._usage = usage
        self._snapshots = snapshots
        self._prompts = prompts
        self._notifier = notifier
        self._model_version = model_version
        self._time_provider = time_provider or _utc_now

    async def run(self, request: OrchestrationRequest) -> OrchestrationResult:
        # Serve from cache when possible; otherwise gate, retrieve, generate and persist.
        capability = Capability(request.capability)
        config = get_capability_config(capability)
        started = time.monotonic()
        logger.info(
            "insight_orchestration_start capability=%s user_id=%s keyword_ids=%s",
            capability.value,
            request.user_id,
            len(request.keyword_ids),
        )

        plan = await self._entitlements.resolve(request.user_id)
        scope = request.scope or config.default_scope.value
        context = await self._assembler.assemble(
            scope,
            request.keyword_ids,
            request.marketplace,
            request.language,
            query=request.query,
            niche_terms=request.niche_terms,
            budget_cents=request.budget_cents,
        )
        context.extra.update(request.metadata or {})

        prompt_config = await load_prompt_config(self._prompts, config.prompt_key)
        output_type = prompt_config.output_type or config.output_type

        # Free-form questions must not collide on the same keyword set.
        hash_niche = [*context.niche_terms, context.query] if context.query else list(context.niche_terms)
        input_hash = compute_input_hash(
            capability.value, context.market, hash_niche, context.budget_cents, context.terms
        )
        metrics = {
            "plan_code": plan.plan_code,
            "keyword_metrics": context.metrics,
            "predictions": context.predictions,
            "risk": context.risk,
        }

        cached = await self._cache.get(output_type.value, input_hash)
        if cached is not None:
            latency_ms = _elapsed_ms(started)
            logger.info(
                "insight_cache_hit capability=%s type=%s input_hash=%s",
                capability.value,
                output_type.value,
                input_hash,
            )
            await self._usage.record(
                UsageEvent(
                    user_id=request.user_id,
                    type=output_type.value,
                    capability=capability.value,
                    cache_hit=True,
                    latency_ms=latency_ms,
                    tokens_in=None,
                    tokens_out=None,
                    cost_cents=0,
                    model_version=self._model_version,
                    plan_code=plan.plan_code,
                    ts=self._time_provider(),
                )
            )
            return OrchestrationResult(
                capability=capability.value,
                output_type=output_type.value,
                insight=cached.output,
                metrics=metrics,
                references=build_references(context, []),
                model_metadata={
                    "model_version": self._model_version,
                    "latency_ms": latency_ms,
                    "generated_at": cached.generated_at.isoformat(),
                    "expires_at": cached.expires_at.isoformat(),
                },
                cache_hit=True,
            )

        # Quota precedes any paid work; a later hard-stop does not refund it.
        await self._quota.check_and_consume(request.user_id, quota_key_for(output_type))
        await self._cost_cap.ensure_available()

        corpus = await self._retrieve_corpus(capability, config, context)
        if not corpus:
            term = context.terms[0] if context.terms else (context.query_text or "this keyword")
            logger.info(
                "insight_no_corpus_data capability=%s user_id=%s marketplace=%s",
                capability.value,
                request.user_id,
                context.marketplace,
            )
            if context.keywords:
                raise NoReliableData(f'We\'re still gathering data for "{term}". Please check back in a few minutes.')
            raise NoReliableData(
                f'This keyword isn\'t in our system yet. Try searching for "{term}" first to add it to LexyBrain.'
            )
        if len(corpus) < LIMITED_CORPUS_THRESHOLD:
            logger.warning(
                "insight_limited_context capability=%s user_id=%s corpus_count=%s",
                capability.value,
                request.user_id,
                len(corpus),
            )

        generation = await self._generator.generate(
            output_type,
            _generation_context(config, context, corpus),
            prompt_config,
            user_id=request.user_id,
        )

        await self._cache.put(
            output_type.value,
            input_hash,
            user_id=request.user_id,
            context={
                "capability": capability.value,
                "market": context.market,
                "niche_terms": context.niche_terms,
                "keyword_ids": context.keyword_ids,
                "budget_cents": context.budget_cents,
            },
            output=generation.output,
            ttl_minutes=CACHE_TTL_MINUTES[output_type],
        )

        references = build_references(context, corpus)
        snapshot_ids = await self._snapshots.write(
            snapshot_records(
                keyword_ids=context.keyword_ids,
                capability=capability.value,
                scope=scope,
                metrics_used=context.metrics,
                insight=generation.output,
                references=references,
                created_by=request.user_id,
            )
        )

        await self._usage.record(
            UsageEvent(
                user_id=request.user_id,
                type=output_type.value,
                capability=capability.value,
                cache_hit=False,
                latency_ms=generation.metadata["latency_ms"],
                tokens_in=generation.metadata["prompt_tokens"],
                tokens_out=generation.metadata["output_tokens"],
                cost_cents=estimate_cost_cents(output_type),
                model_version=generation.metadata["model_version"],
                plan_code=plan.plan_code,
                ts=self._time_provider(),
            )
        )

        if output_type == OutputType.RISK and self._notifier is not None:
            background.spawn(
                self._notifier.notify(request.user_id, generation.output),
                name=f"risk_notification:{request.user_id}",
            )

        logger.info(
            "insight_orchestration_success capability=%s user_id=%s snapshots=%s latency_ms=%s",
            capability.value,
            request.user_id,
            len(snapshot_ids),
            generation.metadata["latency_ms"],
        )
        return OrchestrationResult(
            capability=capability.value,
            output_type=output_type.value,
            insight=generation.output,
            metrics=metrics,
            references=references,
            model_metadata=dict(generation.metadata),
            cache_hit=False,
            snapshot_ids=snapshot_ids,
        )

    async def _retrieve_corpus(
        self, capability: Capability, config: CapabilityConfig, context: ContextBundle
    ) -> list[RetrievedChunk]:
        # A retrieval failure is treated as an empty corpus.
        try:
            return await self._retriever.retrieve(
                context.query_text,
                capability.value,
                context.marketplace,
                context.language,
                config.max_context,
            )
        except RetrievalError as exc:
            logger.warning("insight_corpus_retrieval_failed capability=%s", capability.value, exc_info=exc)
            return []


def _generation_context(
    config: CapabilityConfig, context: ContextBundle, corpus: list[RetrievedChunk]
) -> dict[str, Any]:
    # Shape the bundle and corpus into the prompt context.
    return {
        "market": context.market,
        "niche_terms": context.niche_terms,
        "keywords": context.keyword_scores(),
        "budget_cents": context.budget_cents,
        "metadata": {
            "capability": {
                "output_type": config.output_type.value,
                "prompt_key": config.prompt_key,
                "default_scope": config.default_scope.value,
                "max_context": config.max_context,
            },
            **({"query": context.query} if context.query else {}),
            **context.metadata(),
            "corpus": [asdict(chunk) for chunk in corpus],
        },
    }


def _elapsed_ms(started: float) -> int:
    return int((time.monotonic() - started) * 1000)


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def build_orchestrator(session_factory: Callable[[], AsyncSession] | None = None) -> InsightOrchestrator:
    # Production wiring over the shared session factory.
    if session_factory is None:
        from lexybrain.persistence.db import SessionLocal

        session_factory = SessionLocal
    settings = get_settings()
    entitlements = EntitlementService(SqlEntitlementSource(session_factory))
    usage = SqlUsageStore(session_factory)
    return InsightOrchestrator(
        entitlements=entitlements,
        quota=QuotaService(counters=SqlCounterStore(session_factory), entitlements=entitlements),
        cost_cap=CostCapGuard(usage, cap_cents=settings.daily_cost_cap_cents),
        assembler=ContextAssembler(SqlKeywordDataSource(session_factory)),
        retriever=HybridCorpusRetriever(session_factory),
        cache=InsightCache(SqlCacheBackend(session_factory)),
        generator=build_generator(get_llm_provider(), SqlFailureRecorder(session_factory)),
        usage=usage,
        snapshots=SqlSnapshotStore(session_factory),
        prompts=SqlPromptSource(session_factory),
        notifier=RiskNotifier(SqlNotificationSink(session_factory), enabled=settings.notifications_enabled),
        model_version=settings.model_version,
    )
