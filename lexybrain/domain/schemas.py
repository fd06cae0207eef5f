from __future__ import annotations

from typing import Literal

from pydantic import BaseModel, ConfigDict, Field

from lexybrain.domain.capabilities import OutputType


class _Output(BaseModel):
    # Ignore extra keys the model adds but never coerce missing ones.
    model_config = ConfigDict(extra="ignore")


class TermReason(_Output):
    term: str = Field(min_length=1)
    why: str = Field(min_length=1)


class MarketBrief(_Output):
    niche: str = Field(min_length=1)
    summary: str = Field(min_length=1)
    top_opportunities: list[TermReason] = Field(max_length=10)
    risks: list[TermReason] = Field(max_length=10)
    actions: list[str] = Field(max_length=10)
    confidence: float = Field(ge=0, le=1)


class RadarScores(_Output):
    demand: float = Field(ge=0, le=1)
    momentum: float = Field(ge=0, le=1)
    competition: float = Field(ge=0, le=1)
    novelty: float = Field(ge=0, le=1)
    profit: float = Field(ge=0, le=1)


class RadarItem(_Output):
    term: str = Field(min_length=1)
    scores: RadarScores
    comment: str


class OpportunityRadar(_Output):
    items: list[RadarItem] = Field(max_length=20)


class BudgetSplit(_Output):
    term: str = Field(min_length=1)
    daily_cents: int = Field(ge=0)
    expected_cpc_cents: int = Field(ge=0)
    expected_clicks: int = Field(ge=0)


class AdInsight(_Output):
    budget_split: list[BudgetSplit] = Field(max_length=20)
    notes: str = ""


class RiskAlert(_Output):
    term: str = Field(min_length=1)
    issue: str = Field(min_length=1)
    severity: Literal["low", "medium", "high"]
    evidence: str
    action: str


class RiskSentinel(_Output):
    alerts: list[RiskAlert] = Field(max_length=20)


OUTPUT_SCHEMAS: dict[OutputType, type[_Output]] = {
    OutputType.MARKET_BRIEF: MarketBrief,
    OutputType.RADAR: OpportunityRadar,
    OutputType.AD_INSIGHT: AdInsight,
    OutputType.RISK: RiskSentinel,
}


SCHEMA_DESCRIPTIONS: dict[OutputType, str] = {
    OutputType.MARKET_BRIEF: """OUTPUT SCHEMA (MarketBrief):
{
  "niche": "string (required, the niche/market being analyzed)",
  "summary": "string (required, 2-4 sentence overview)",
  "top_opportunities": [{"term": "string", "why": "string"}],
  "risks": [{"term": "string", "why": "string"}],
  "actions": ["string (actionable recommendation)"],
  "confidence": number (required, 0.0 to 1.0)
}

REQUIREMENTS:
- Return ONLY valid JSON
- top_opportunities, risks, actions: max 10 items each
- confidence must be between 0 and 1""",
    OutputType.RADAR: """OUTPUT SCHEMA (OpportunityRadar):
{
  "items": [
    {
      "term": "string (required, keyword)",
      "scores": {
        "demand": number (0.0 to 1.0),
        "momentum": number (0.0 to 1.0),
        "competition": number (0.0 to 1.0, lower is better),
        "novelty": number (0.0 to 1.0),
        "profit": number (0.0 to 1.0)
      },
      "comment": "string (required, brief insight)"
    }
  ]
}

REQUIREMENTS:
- Return ONLY valid JSON
- items: max 20 entries
- All scores must be between 0 and 1""",
    OutputType.AD_INSIGHT: """OUTPUT SCHEMA (AdInsight):
{
  "budget_split": [
    {
      "term": "string (required, keyword)",
      "daily_cents": integer (required, min 0),
      "expected_cpc_cents": integer (required),
      "expected_clicks": integer (required)
    }
  ],
  "notes": "string (additional recommendations)"
}

REQUIREMENTS:
- Return ONLY valid JSON
- budget_split: max 20 items
- All monetary values in integer cents""",
    OutputType.RISK: """OUTPUT SCHEMA (RiskSentinel):
{
  "alerts": [
    {
      "term": "string (required, keyword)",
      "issue": "string (required, the risk)",
      "severity": "low" | "medium" | "high",
      "evidence": "string (supporting data)",
      "action": "string (mitigation)"
    }
  ]
}

REQUIREMENTS:
- Return ONLY valid JSON
- alerts: max 20 items
- severity must be one of low, medium, high""",
}
