from __future__ import annotations

from dataclasses import dataclass
from enum import Enum


class OutputType(str, Enum):
    MARKET_BRIEF = "market_brief"
    RADAR = "radar"
    AD_INSIGHT = "ad_insight"
    RISK = "risk"


class Capability(str, Enum):
    KEYWORD_INSIGHTS = "keyword_insights"
    MARKET_BRIEF = "market_brief"
    COMPETITOR_INTEL = "competitor_intel"
    ALERT_EXPLANATION = "alert_explanation"
    RECOMMENDATIONS = "recommendations"
    COMPLIANCE_CHECK = "compliance_check"
    SUPPORT_DOCS = "support_docs"
    ASK_ANYTHING = "ask_anything"


class Scope(str, Enum):
    USER = "user"
    TEAM = "team"
    GLOBAL = "global"


class QuotaKey(str, Enum):
    AI_CALLS = "ai_calls"
    AI_BRIEF = "ai_brief"
    AI_SIM = "ai_sim"


@dataclass(frozen=True)
class CapabilityConfig:
    # Static dispatch row for one capability.
    output_type: OutputType
    prompt_key: str
    default_scope: Scope
    # Upper bound on corpus chunks pulled into the prompt.
    max_context: int


CAPABILITY_CONFIG: dict[Capability, CapabilityConfig] = {
    Capability.KEYWORD_INSIGHTS: CapabilityConfig(OutputType.MARKET_BRIEF, "keyword_insights_v1", Scope.USER, 12),
    Capability.MARKET_BRIEF: CapabilityConfig(OutputType.MARKET_BRIEF, "market_brief_v1", Scope.USER, 12),
    Capability.COMPETITOR_INTEL: CapabilityConfig(OutputType.RADAR, "competitor_intel_v1", Scope.TEAM, 16),
    Capability.ALERT_EXPLANATION: CapabilityConfig(OutputType.RISK, "alert_explanation_v1", Scope.USER, 10),
    Capability.RECOMMENDATIONS: CapabilityConfig(OutputType.MARKET_BRIEF, "keyword_insights_v1", Scope.USER, 12),
    Capability.COMPLIANCE_CHECK: CapabilityConfig(OutputType.RISK, "alert_explanation_v1", Scope.TEAM, 10),
    Capability.SUPPORT_DOCS: CapabilityConfig(OutputType.MARKET_BRIEF, "market_brief_v1", Scope.GLOBAL, 8),
    Capability.ASK_ANYTHING: CapabilityConfig(OutputType.MARKET_BRIEF, "ask_anything_v1", Scope.USER, 12),
}

# Fail at import if a capability is added without a dispatch row.
_missing = set(Capability) - set(CAPABILITY_CONFIG)
if _missing:
    raise RuntimeError(f"capabilities missing config: {sorted(c.value for c in _missing)}")

CACHE_TTL_MINUTES: dict[OutputType, int] = {
    OutputType.MARKET_BRIEF: 1440,
    OutputType.RADAR: 1440,
    OutputType.RISK: 720,
    OutputType.AD_INSIGHT: 360,
}

# Rough per-call spend used for the daily cost cap.
ESTIMATED_COST_CENTS: dict[OutputType, int] = {
    OutputType.MARKET_BRIEF: 5,
    OutputType.RADAR: 3,
    OutputType.RISK: 2,
    OutputType.AD_INSIGHT: 2,
}

if set(CACHE_TTL_MINUTES) != set(OutputType) or set(ESTIMATED_COST_CENTS) != set(OutputType):
    raise RuntimeError("every output type needs a cache ttl and cost estimate")


def get_capability_config(capability: Capability) -> CapabilityConfig:
    return CAPABILITY_CONFIG[capability]


def quota_key_for(output_type: OutputType) -> QuotaKey:
    # Briefs draw from their own allowance; everything else counts as a generic AI call.
    if output_type == OutputType.MARKET_BRIEF:
        return QuotaKey.AI_BRIEF
    return QuotaKey.AI_CALLS
