from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Depends, Request
from pydantic import BaseModel, ConfigDict, Field

from lexybrain.apps.api.deps import ensure_enabled, get_orchestrator, get_user_id
from lexybrain.apps.api.openapi import INSIGHT_ERROR_RESPONSES
from lexybrain.apps.api.response import SuccessEnvelope, success_response
from lexybrain.domain.capabilities import Capability, Scope
from lexybrain.services.orchestrator import InsightOrchestrator, OrchestrationRequest


router = APIRouter(tags=["insights"], responses=INSIGHT_ERROR_RESPONSES)


class InsightRequest(BaseModel):
    capability: Capability
    keyword_ids: list[str] = Field(default_factory=list, max_length=100)
    query: str | None = Field(default=None, max_length=2000)
    marketplace: str | None = Field(default=None, max_length=64)
    language: str | None = Field(default=None, max_length=16)
    scope: Scope | None = None
    niche_terms: list[str] = Field(default_factory=list, max_length=50)
    budget_cents: int | None = Field(default=None, ge=0)
    metadata: dict[str, Any] = Field(default_factory=dict)


class InsightResponse(BaseModel):
    model_config = ConfigDict(protected_namespaces=())

    capability: str
    output_type: str
    insight: dict[str, Any]
    metrics: dict[str, Any]
    references: list[dict[str, Any]]
    model_metadata: dict[str, Any]
    cache_hit: bool
    snapshot_ids: list[str]


def to_orchestration_request(payload: InsightRequest, user_id: str) -> OrchestrationRequest:
    # Translate the API payload into an orchestration request.
    return OrchestrationRequest(
        capability=payload.capability,
        user_id=user_id,
        keyword_ids=list(payload.keyword_ids),
        query=payload.query,
        marketplace=payload.marketplace,
        language=payload.language,
        scope=payload.scope.value if payload.scope else None,
        niche_terms=list(payload.niche_terms),
        budget_cents=payload.budget_cents,
        metadata=dict(payload.metadata),
    )


async def run_insight(
    request: Request,
    payload: InsightRequest,
    user_id: str,
    orchestrator: InsightOrchestrator,
) -> dict:
    # Orchestration errors propagate to the shared exception handler.
    result = await orchestrator.run(to_orchestration_request(payload, user_id))
    return success_response(request=request, data=InsightResponse(**result.as_dict()))


@router.post(
    "/insights",
    response_model=SuccessEnvelope[InsightResponse],
    dependencies=[Depends(ensure_enabled)],
)
async def create_insight(
    request: Request,
    payload: InsightRequest,
    user_id: str = Depends(get_user_id),
    orchestrator: InsightOrchestrator = Depends(get_orchestrator),
) -> dict:
    # Run the orchestrator and wrap the result in the envelope.
    return await run_insight(request, payload, user_id, orchestrator)
