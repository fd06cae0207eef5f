from __future__ import annotations

import asyncio
from dataclasses import dataclass
from datetime import timedelta
import json

import pytest

from lexybrain.core.errors import CostCapReached, NoReliableData, OutputValidationFailed, QuotaExceeded
from lexybrain.domain.capabilities import Capability
from lexybrain.providers.llm.fake import FakeLLMProvider, canned_output
from lexybrain.services import background
from lexybrain.services.context import ContextAssembler
from lexybrain.services.costs import CostCapGuard
from lexybrain.services.entitlements import EntitlementService
from lexybrain.services.generation import InsightGenerator
from lexybrain.services.insight_cache import InsightCache
from lexybrain.services.notifications import RiskNotifier
from lexybrain.services.orchestrator import (
    InsightOrchestrator,
    OrchestrationRequest,
    build_references,
    compute_input_hash,
)
from lexybrain.services.prompt import PromptRow
from lexybrain.services.quota import QuotaService
from lexybrain.tests.utils.fakes import (
    FixedClock,
    InMemoryCacheBackend,
    InMemoryCounterStore,
    InMemoryEntitlementSource,
    InMemoryKeywordSource,
    InMemoryPromptSource,
    InMemorySnapshotStore,
    InMemoryUsageStore,
    RecordingFailureRecorder,
    RecordingNotificationSink,
    ScriptedLLMProvider,
    StaticRetriever,
    make_chunk,
    make_keyword,
)


@dataclass
class Harness:
    orchestrator: InsightOrchestrator
    clock: FixedClock
    counters: InMemoryCounterStore
    cache: InMemoryCacheBackend
    usage: InMemoryUsageStore
    retriever: StaticRetriever
    provider: object
    snapshots: InMemorySnapshotStore
    sink: RecordingNotificationSink
    failures: RecordingFailureRecorder
    plans: InMemoryEntitlementSource


def _harness(
    *,
    provider=None,
    chunks=None,
    cap_cents: int | None = None,
    plans: dict[str, str] | None = None,
    prompts: InMemoryPromptSource | None = None,
    keywords=None,
) -> Harness:
    clock = FixedClock()
    counters = InMemoryCounterStore()
    cache = InMemoryCacheBackend()
    usage = InMemoryUsageStore()
    retriever = StaticRetriever([make_chunk(i) for i in range(6)] if chunks is None else chunks)
    provider = provider or FakeLLMProvider()
    snapshots = InMemorySnapshotStore()
    sink = RecordingNotificationSink()
    failures = RecordingFailureRecorder()
    source = InMemoryEntitlementSource(plans=plans or {})
    entitlements = EntitlementService(source)
    keyword_source = InMemoryKeywordSource(
        keywords
        if keywords is not None
        else [make_keyword("k1", "boho wall art"), make_keyword("k2", "macrame hanger")]
    )
    orchestrator = InsightOrchestrator(
        entitlements=entitlements,
        quota=QuotaService(counters=counters, entitlements=entitlements, time_provider=clock),
        cost_cap=CostCapGuard(usage, cap_cents=cap_cents, time_provider=clock),
        assembler=ContextAssembler(keyword_source, time_provider=clock),
        retriever=retriever,
        cache=InsightCache(cache, time_provider=clock),
        generator=InsightGenerator(
            provider,
            model_version="llama-3-8b",
            max_tokens=512,
            temperature=0.3,
            retry_temperature=0.1,
            max_retries=1,
            failure_recorder=failures,
        ),
        usage=usage,
        snapshots=snapshots,
        prompts=prompts,
        notifier=RiskNotifier(sink),
        model_version="llama-3-8b",
        time_provider=clock,
    )
    return Harness(orchestrator, clock, counters, cache, usage, retriever, provider, snapshots, sink, failures, source)


def _request(capability=Capability.MARKET_BRIEF, **overrides) -> OrchestrationRequest:
    values = {"capability": capability, "user_id": "u1", "keyword_ids": ["k1", "k2"], "marketplace": "etsy"}
    values.update(overrides)
    return OrchestrationRequest(**values)


@pytest.mark.asyncio
async def test_fresh_generation_persists_everything_and_consumes_quota() -> None:
    h = _harness()

    result = await h.orchestrator.run(_request())

    assert result.cache_hit is False
    assert result.output_type == "market_brief"
    assert result.insight == canned_output("market_brief")
    assert result.snapshot_ids == ["snap-0", "snap-1"]
    assert [record.keyword_id for record in h.snapshots.records] == ["k1", "k2"]
    assert result.model_metadata["model_version"] == "llama-3-8b"
    assert result.metrics["plan_code"] == "free"
    assert h.counters.values == {("u1", h.clock.now.date().replace(day=1), "ai_brief"): 1}
    assert len(h.cache.upserts) == 1
    assert h.cache.upserts[0].expires_at == h.clock.now + timedelta(minutes=1440)
    event = h.usage.events[-1]
    assert (event.cache_hit, event.cost_cents, event.plan_code) == (False, 5, "free")
    assert event.tokens_in and event.tokens_out
    corpus_refs = [ref for ref in result.references if ref["type"].startswith("ai_corpus:")]
    assert len(corpus_refs) == 6
    assert h.retriever.calls[0]["limit"] == 12
    assert h.retriever.calls[0]["marketplace"] == "etsy"
    assert h.retriever.calls[0]["query_text"] == "boho wall art macrame hanger"


@pytest.mark.asyncio
async def test_cache_hit_skips_quota_generation_and_records_zero_cost() -> None:
    h = _harness()
    await h.orchestrator.run(_request())
    calls_after_first = len(h.provider.calls)

    # Same inputs in a different order hit the same entry.
    result = await h.orchestrator.run(_request(keyword_ids=["k2", "k1"]))

    assert result.cache_hit is True
    assert result.insight == canned_output("market_brief")
    assert result.snapshot_ids == []
    assert len(h.provider.calls) == calls_after_first
    assert len(h.counters.writes) == 1
    hit_event = h.usage.events[-1]
    assert hit_event.cache_hit is True
    assert hit_event.cost_cents == 0
    assert len(h.retriever.calls) == 1


@pytest.mark.asyncio
async def test_cache_hit_is_served_even_when_quota_is_exhausted() -> None:
    h = _harness()
    await h.orchestrator.run(_request())
    await h.orchestrator.run(_request(keyword_ids=["k1"]))

    with pytest.raises(QuotaExceeded):
        await h.orchestrator.run(_request(keyword_ids=["k2"]))
    result = await h.orchestrator.run(_request(keyword_ids=["k2", "k1"]))
    assert result.cache_hit is True


@pytest.mark.asyncio
async def test_expired_cache_entry_regenerates() -> None:
    h = _harness()
    await h.orchestrator.run(_request())
    h.clock.now = h.clock.now + timedelta(minutes=1441)

    result = await h.orchestrator.run(_request())

    assert result.cache_hit is False
    assert len(h.provider.calls) == 2


@pytest.mark.asyncio
async def test_quota_exceeded_never_invokes_model() -> None:
    h = _harness()
    h.counters.values[("u1", h.clock.now.date().replace(day=1), "ai_brief")] = 2

    with pytest.raises(QuotaExceeded) as excinfo:
        await h.orchestrator.run(_request())

    assert excinfo.value.details() == {"kind": "quota_exceeded", "quota_key": "ai_brief", "used": 2, "limit": 2}
    assert h.provider.calls == []
    assert h.retriever.calls == []
    assert h.cache.upserts == []
    assert h.usage.events == []


@pytest.mark.asyncio
async def test_cost_cap_blocks_after_quota_consumption() -> None:
    h = _harness(cap_cents=5)
    h.usage.spent_cents = 5

    with pytest.raises(CostCapReached):
        await h.orchestrator.run(_request(capability=Capability.COMPETITOR_INTEL))

    assert h.provider.calls == []
    assert len(h.counters.writes) == 1


@pytest.mark.asyncio
async def test_empty_corpus_hard_stops_with_keyword_message() -> None:
    h = _harness(chunks=[])

    with pytest.raises(NoReliableData) as excinfo:
        await h.orchestrator.run(_request())

    assert "still gathering data for \"boho wall art\"" in excinfo.value.message
    assert h.provider.calls == []
    assert h.cache.upserts == []
    assert h.snapshots.records == []


@pytest.mark.asyncio
async def test_retrieval_error_is_treated_as_empty_corpus() -> None:
    from lexybrain.core.errors import RetrievalError

    h = _harness(keywords=[])
    h.retriever.error = RetrievalError("search failed")

    with pytest.raises(NoReliableData) as excinfo:
        await h.orchestrator.run(_request(keyword_ids=[], query="candle trends", capability=Capability.ASK_ANYTHING))

    assert "isn't in our system yet" in excinfo.value.message
    assert "candle trends" in excinfo.value.message


@pytest.mark.asyncio
async def test_missing_keywords_fail_before_any_side_effect() -> None:
    h = _harness()

    with pytest.raises(NoReliableData):
        await h.orchestrator.run(_request(keyword_ids=["nope"]))

    assert h.counters.writes == []
    assert h.usage.events == []


@pytest.mark.asyncio
async def test_generation_failure_leaves_no_cache_or_snapshot() -> None:
    h = _harness(provider=ScriptedLLMProvider(["nope", "still nope"]))

    with pytest.raises(OutputValidationFailed):
        await h.orchestrator.run(_request())

    assert h.cache.upserts == []
    assert h.snapshots.records == []
    assert h.usage.events == []
    assert len(h.failures.failures) == 1
    # Quota is consumed before generation and not refunded.
    assert len(h.counters.writes) == 1


@pytest.mark.asyncio
async def test_limited_corpus_still_generates(caplog) -> None:
    h = _harness(chunks=[make_chunk(0), make_chunk(1)])

    with caplog.at_level("WARNING"):
        result = await h.orchestrator.run(_request())

    assert result.cache_hit is False
    assert "insight_limited_context" in caplog.text


@pytest.mark.asyncio
async def test_prompt_row_can_route_capability_to_ad_insight() -> None:
    prompts = InMemoryPromptSource(
        {"competitor_intel_v1": PromptRow(system_instructions="Ads.", constraints={"output_type": "ad_insight"})}
    )
    h = _harness(prompts=prompts)

    result = await h.orchestrator.run(_request(capability=Capability.COMPETITOR_INTEL, budget_cents=2000))

    assert result.output_type == "ad_insight"
    assert result.insight == canned_output("ad_insight")
    assert "Daily Budget: $20.00" in h.provider.calls[0]["prompt"]
    assert h.usage.events[-1].cost_cents == 2
    assert h.counters.writes[0][2] == "ai_calls"


@pytest.mark.asyncio
async def test_high_severity_risk_triggers_background_notification() -> None:
    risk = canned_output("risk")
    high = {"alerts": [dict(risk["alerts"][0], severity="high")]}
    h = _harness(provider=ScriptedLLMProvider([json.dumps(high)]))

    result = await h.orchestrator.run(_request(capability=Capability.ALERT_EXPLANATION))
    await background.drain()

    assert result.output_type == "risk"
    assert len(h.sink.messages) == 1
    assert h.sink.messages[0].user_id == "u1"


@pytest.mark.asyncio
async def test_notification_failure_does_not_fail_the_request() -> None:
    risk = canned_output("risk")
    high = {"alerts": [dict(risk["alerts"][0], severity="high")]}
    h = _harness(provider=ScriptedLLMProvider([json.dumps(high)]))
    h.sink.fail = True

    result = await h.orchestrator.run(_request(capability=Capability.ALERT_EXPLANATION))
    await background.drain()
    await asyncio.sleep(0)

    assert result.insight["alerts"][0]["severity"] == "high"
    assert background.pending_count() == 0


@pytest.mark.asyncio
async def test_unlimited_plan_generates_without_counter_writes() -> None:
    h = _harness(plans={"u1": "growth"})

    for keyword_ids in (["k1"], ["k2"], ["k1", "k2"]):
        await h.orchestrator.run(_request(keyword_ids=keyword_ids))

    assert h.counters.writes == []
    assert h.usage.events[-1].plan_code == "growth"


@pytest.mark.asyncio
async def test_niche_terms_differing_in_case_or_duplicates_share_a_cache_entry() -> None:
    h = _harness()
    await h.orchestrator.run(_request(niche_terms=["Boho", "wall art"]))
    calls_after_first = len(h.provider.calls)

    result = await h.orchestrator.run(_request(niche_terms=[" boho ", "wall art", "BOHO"]))

    assert result.cache_hit is True
    assert len(h.provider.calls) == calls_after_first
    assert len(h.counters.writes) == 1


def test_input_hash_is_order_independent_and_capability_scoped() -> None:
    base = compute_input_hash("market_brief", "Etsy", ["b", "a"], None, ["y", "x"])

    assert base == compute_input_hash("market_brief", "etsy", ["a", "b"], 0, ["x", "y"])
    assert base != compute_input_hash("keyword_insights", "etsy", ["a", "b"], 0, ["x", "y"])
    assert base != compute_input_hash("market_brief", "etsy", ["a", "b"], 100, ["x", "y"])
    assert base == compute_input_hash("market_brief", "etsy", ["A", "b", "a"], 0, ["x", "y", "X"])
    assert len(base) == 64


@pytest.mark.asyncio
async def test_references_cover_every_signal_with_stable_ids() -> None:
    source = InMemoryKeywordSource([make_keyword("k1", "boho wall art")])
    source.daily = [{"keyword_id": "k1", "collected_on": "2026-03-10"}]
    source.weekly = [{"keyword_id": "k1", "week_start": "2026-03-02", "source": None}]
    source.prediction_rows = [{"keyword_id": "k1", "horizon": "30d", "created_at": "2026-03-01", "marketplace": None}]
    source.rules = [{"id": "r1", "marketplace": None}]
    source.events = [{"id": "e1", "keyword_id": "k1", "occurred_at": "2026-03-11"}]
    bundle = await ContextAssembler(source, time_provider=FixedClock()).assemble("user", ["k1"], None, None)

    first = build_references(bundle, [make_chunk(0, source_type="docs")])
    second = build_references(bundle, [make_chunk(0, source_type="docs")])

    assert [ref["type"] for ref in first] == [
        "keyword",
        "keyword_metrics_daily",
        "keyword_metrics_weekly",
        "keyword_predictions",
        "risk_rules",
        "risk_events",
        "ai_corpus:docs",
    ]
    assert first == second
    corpus = first[-1]
    assert corpus["scope"] == "global"
    assert corpus["extra"] == {"source_ref": {"ref": 0}, "lexical_rank": 1, "vector_rank": 2}
