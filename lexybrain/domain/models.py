from __future__ import annotations

from datetime import date, datetime
from typing import Any
from uuid import UUID, uuid4

from sqlalchemy import (
    BigInteger,
    Boolean,
    Date,
    DateTime,
    Float,
    Integer,
    String,
    Text,
    func,
    Index,
    UniqueConstraint,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column
from pgvector.sqlalchemy import Vector

from lexybrain.core.config import EMBED_DIM

class Base(DeclarativeBase):
    pass


class Keyword(Base):
    __tablename__ = "keywords"

    # Tracked market terms; scores are refreshed by ingestion jobs outside this service.
    id: Mapped[str] = mapped_column(String, primary_key=True)
    term: Mapped[str] = mapped_column(String)
    market: Mapped[str | None] = mapped_column(String, nullable=True)
    source: Mapped[str | None] = mapped_column(String, nullable=True)
    demand_index: Mapped[float | None] = mapped_column(Float, nullable=True)
    competition_score: Mapped[float | None] = mapped_column(Float, nullable=True)
    trend_momentum: Mapped[float | None] = mapped_column(Float, nullable=True)
    engagement_score: Mapped[float | None] = mapped_column(Float, nullable=True)
    ai_opportunity_score: Mapped[float | None] = mapped_column(Float, nullable=True)
    extras: Mapped[dict[str, Any] | None] = mapped_column(JSONB, nullable=True)
    updated_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)


class KeywordMetricDaily(Base):
    __tablename__ = "keyword_metrics_daily"

    id: Mapped[int] = mapped_column(BigInteger, primary_key=True, autoincrement=True)
    keyword_id: Mapped[str] = mapped_column(String, index=True)
    collected_on: Mapped[date] = mapped_column(Date)
    volume: Mapped[float | None] = mapped_column(Float, nullable=True)
    competition_score: Mapped[float | None] = mapped_column(Float, nullable=True)
    engagement: Mapped[float | None] = mapped_column(Float, nullable=True)
    social_mentions: Mapped[int | None] = mapped_column(Integer, nullable=True)
    social_sentiment: Mapped[float | None] = mapped_column(Float, nullable=True)


class KeywordMetricWeekly(Base):
    __tablename__ = "keyword_metrics_weekly"

    id: Mapped[int] = mapped_column(BigInteger, primary_key=True, autoincrement=True)
    keyword_id: Mapped[str] = mapped_column(String, index=True)
    week_start: Mapped[date] = mapped_column(Date)
    source: Mapped[str | None] = mapped_column(String, nullable=True)
    metrics: Mapped[dict[str, Any] | None] = mapped_column(JSONB, nullable=True)


class KeywordPrediction(Base):
    __tablename__ = "keyword_predictions"

    id: Mapped[int] = mapped_column(BigInteger, primary_key=True, autoincrement=True)
    keyword_id: Mapped[str] = mapped_column(String, index=True)
    marketplace: Mapped[str | None] = mapped_column(String, nullable=True)
    horizon: Mapped[str] = mapped_column(String)
    metrics: Mapped[dict[str, Any] | None] = mapped_column(JSONB, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())


class RiskRule(Base):
    __tablename__ = "risk_rules"

    id: Mapped[str] = mapped_column(String, primary_key=True)
    rule_code: Mapped[str] = mapped_column(String)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    # Null marketplace marks a rule that applies everywhere.
    marketplace: Mapped[str | None] = mapped_column(String, nullable=True)
    severity: Mapped[str | None] = mapped_column(String, nullable=True)
    metadata_json: Mapped[dict[str, Any] | None] = mapped_column("metadata", JSONB, nullable=True)


class RiskEvent(Base):
    __tablename__ = "risk_events"

    id: Mapped[str] = mapped_column(String, primary_key=True)
    keyword_id: Mapped[str | None] = mapped_column(String, nullable=True, index=True)
    rule_id: Mapped[str | None] = mapped_column(String, nullable=True)
    marketplace: Mapped[str | None] = mapped_column(String, nullable=True)
    occurred_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    details: Mapped[dict[str, Any] | None] = mapped_column(JSONB, nullable=True)
    scope: Mapped[str | None] = mapped_column(String, nullable=True)


class CorpusChunk(Base):
    __tablename__ = "ai_corpus"

    id: Mapped[UUID] = mapped_column(primary_key=True, default=uuid4)
    owner_scope: Mapped[str] = mapped_column(String, default="global")
    owner_user_id: Mapped[str | None] = mapped_column(String, nullable=True)
    source_type: Mapped[str] = mapped_column(String)
    source_ref: Mapped[dict[str, Any] | None] = mapped_column(JSONB, nullable=True)
    marketplace: Mapped[str | None] = mapped_column(String, nullable=True)
    language: Mapped[str | None] = mapped_column(String, nullable=True)
    chunk: Mapped[str] = mapped_column(Text, nullable=False)
    # Chunks without an embedding still rank lexically.
    embedding: Mapped[list[float] | None] = mapped_column(Vector(EMBED_DIM), nullable=True)
    metadata_json: Mapped[dict[str, Any] | None] = mapped_column("metadata", JSONB, nullable=True)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())


class AiInsight(Base):
    __tablename__ = "ai_insights"
    __table_args__ = (
        UniqueConstraint("type", "input_hash", name="uq_ai_insights_type_input_hash"),
    )

    # Cached generations keyed by output type and content hash of the request.
    id: Mapped[UUID] = mapped_column(primary_key=True, default=uuid4)
    type: Mapped[str] = mapped_column(String)
    input_hash: Mapped[str] = mapped_column(String)
    user_id: Mapped[str | None] = mapped_column(String, nullable=True)
    context_json: Mapped[dict[str, Any] | None] = mapped_column(JSONB, nullable=True)
    output_json: Mapped[dict[str, Any]] = mapped_column(JSONB)
    status: Mapped[str] = mapped_column(String, default="ready")
    ttl_minutes: Mapped[int] = mapped_column(Integer)
    generated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    expires_at: Mapped[datetime] = mapped_column(DateTime(timezone=True))


class UsageCounter(Base):
    __tablename__ = "usage_counters"

    # Monthly counters per user and quota key; period_start is day one of the UTC month.
    user_id: Mapped[str] = mapped_column(String, primary_key=True)
    period_start: Mapped[date] = mapped_column(Date, primary_key=True)
    key: Mapped[str] = mapped_column(String, primary_key=True)
    value: Mapped[int] = mapped_column(Integer, default=0)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )


class AiUsageEvent(Base):
    __tablename__ = "ai_usage_events"

    id: Mapped[int] = mapped_column(BigInteger, primary_key=True, autoincrement=True)
    user_id: Mapped[str | None] = mapped_column(String, nullable=True, index=True)
    type: Mapped[str] = mapped_column(String)
    capability: Mapped[str | None] = mapped_column(String, nullable=True)
    cache_hit: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    latency_ms: Mapped[int] = mapped_column(Integer, default=0)
    tokens_in: Mapped[int | None] = mapped_column(Integer, nullable=True)
    tokens_out: Mapped[int | None] = mapped_column(Integer, nullable=True)
    cost_cents: Mapped[int] = mapped_column(Integer, default=0)
    model_version: Mapped[str | None] = mapped_column(String, nullable=True)
    plan_code: Mapped[str | None] = mapped_column(String, nullable=True)
    ts: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())


class InsightSnapshot(Base):
    __tablename__ = "keyword_insight_snapshots"

    # Immutable audit of a fresh generation and the data that grounded it.
    id: Mapped[UUID] = mapped_column(primary_key=True, default=uuid4)
    keyword_id: Mapped[str | None] = mapped_column(String, nullable=True, index=True)
    capability: Mapped[str] = mapped_column(String)
    scope: Mapped[str] = mapped_column(String)
    metrics_used: Mapped[dict[str, Any] | None] = mapped_column(JSONB, nullable=True)
    insight: Mapped[dict[str, Any]] = mapped_column(JSONB)
    references: Mapped[list[dict[str, Any]] | None] = mapped_column(JSONB, nullable=True)
    created_by: Mapped[str | None] = mapped_column(String, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())


class UserProfile(Base):
    __tablename__ = "user_profiles"

    user_id: Mapped[str] = mapped_column(String, primary_key=True)
    plan: Mapped[str] = mapped_column(String, default="free")
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())


class PlanEntitlement(Base):
    __tablename__ = "plan_entitlements"

    # Monthly allowances per plan; -1 means unlimited.
    plan_code: Mapped[str] = mapped_column(String, primary_key=True)
    ai_calls_per_month: Mapped[int] = mapped_column(Integer)
    briefs_per_month: Mapped[int] = mapped_column(Integer)
    sims_per_month: Mapped[int] = mapped_column(Integer)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )


class AiPrompt(Base):
    __tablename__ = "ai_prompts"

    # Admin-editable instruction blocks keyed by prompt key.
    id: Mapped[UUID] = mapped_column(primary_key=True, default=uuid4)
    key: Mapped[str] = mapped_column(String, index=True)
    system_instructions: Mapped[str] = mapped_column(Text)
    constraints: Mapped[dict[str, Any] | None] = mapped_column(JSONB, nullable=True)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )


class AiFailure(Base):
    __tablename__ = "ai_failures"

    id: Mapped[int] = mapped_column(BigInteger, primary_key=True, autoincrement=True)
    user_id: Mapped[str | None] = mapped_column(String, nullable=True)
    type: Mapped[str] = mapped_column(String)
    error_code: Mapped[str] = mapped_column(String)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    payload: Mapped[dict[str, Any] | None] = mapped_column(JSONB, nullable=True)
    ts: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())


class Notification(Base):
    __tablename__ = "notifications"

    id: Mapped[UUID] = mapped_column(primary_key=True, default=uuid4)
    user_id: Mapped[str] = mapped_column(String, index=True)
    category: Mapped[str] = mapped_column(String, default="ai")
    title: Mapped[str] = mapped_column(String)
    body: Mapped[str] = mapped_column(Text)
    severity: Mapped[str] = mapped_column(String, default="critical")
    cta_url: Mapped[str | None] = mapped_column(String, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())


Index("ix_keyword_metrics_daily_keyword_collected", KeywordMetricDaily.keyword_id, KeywordMetricDaily.collected_on.desc())
Index("ix_keyword_metrics_weekly_keyword_week", KeywordMetricWeekly.keyword_id, KeywordMetricWeekly.week_start.desc())
Index("ix_keyword_predictions_keyword_created", KeywordPrediction.keyword_id, KeywordPrediction.created_at.desc())
Index("ix_risk_events_occurred_at", RiskEvent.occurred_at.desc())
Index("ix_ai_corpus_source_type", CorpusChunk.source_type, CorpusChunk.is_active)
Index("ix_ai_insights_expires_at", AiInsight.expires_at)
Index("ix_ai_usage_events_ts_cache_hit", AiUsageEvent.ts, AiUsageEvent.cache_hit)
Index("ix_ai_prompts_key_active", AiPrompt.key, AiPrompt.is_active)
