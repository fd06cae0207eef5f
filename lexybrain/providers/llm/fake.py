from __future__ import annotations

import json

from lexybrain.providers.llm.base import Completion


_CANNED: dict[str, dict] = {
    "market_brief": {
        "niche": "handmade goods",
        "summary": "Demand is steady with room for differentiated listings.",
        "top_opportunities": [{"term": "personalized gifts", "why": "High demand and moderate competition."}],
        "risks": [{"term": "generic mugs", "why": "Saturated with low-price sellers."}],
        "actions": ["Refresh listing titles with long-tail terms."],
        "confidence": 0.7,
    },
    "radar": {
        "items": [
            {
                "term": "personalized gifts",
                "scores": {"demand": 0.8, "momentum": 0.6, "competition": 0.4, "novelty": 0.5, "profit": 0.6},
                "comment": "Solid all-round opportunity.",
            }
        ]
    },
    "ad_insight": {
        "budget_split": [
            {"term": "personalized gifts", "daily_cents": 500, "expected_cpc_cents": 25, "expected_clicks": 20}
        ],
        "notes": "Concentrate spend on the strongest term.",
    },
    "risk": {
        "alerts": [
            {
                "term": "generic mugs",
                "issue": "Oversaturated market",
                "severity": "medium",
                "evidence": "Competition score is high while momentum is flat.",
                "action": "Differentiate with niche designs.",
            }
        ]
    },
}

_SCHEMA_MARKERS = {
    "OUTPUT SCHEMA (OpportunityRadar)": "radar",
    "OUTPUT SCHEMA (AdInsight)": "ad_insight",
    "OUTPUT SCHEMA (RiskSentinel)": "risk",
}


def canned_output(output_type: str) -> dict:
    return _CANNED[output_type]


def _infer_output_type(prompt: str) -> str:
    for marker, output_type in _SCHEMA_MARKERS.items():
        if marker in prompt:
            return output_type
    return "market_brief"


class FakeLLMProvider:
    def __init__(self, response: str | None = None) -> None:
        # Deterministic output keeps local runs and tests free of external calls.
        self._response = response
        self.calls: list[dict] = []

    async def complete(self, prompt: str, *, max_tokens: int, temperature: float) -> Completion:
        self.calls.append({"prompt": prompt, "max_tokens": max_tokens, "temperature": temperature})
        text = self._response
        if text is None:
            text = json.dumps(canned_output(_infer_output_type(prompt)))
        return Completion(text=text, model="fake")
