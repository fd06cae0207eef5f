from __future__ import annotations

from fastapi import APIRouter, Depends, Request

from lexybrain.apps.api.deps import ensure_enabled, get_orchestrator, get_user_id
from lexybrain.apps.api.openapi import INSIGHT_ERROR_RESPONSES
from lexybrain.apps.api.rate_limit import enforce_rate_limit
from lexybrain.apps.api.response import SuccessEnvelope
from lexybrain.apps.api.routes.insights import InsightRequest, InsightResponse, run_insight
from lexybrain.services.orchestrator import InsightOrchestrator


# Browser-extension surface; throttled before identity so anonymous floods stay cheap.
router = APIRouter(prefix="/ext", tags=["extension"], responses=INSIGHT_ERROR_RESPONSES)


@router.post(
    "/insights",
    response_model=SuccessEnvelope[InsightResponse],
    dependencies=[Depends(enforce_rate_limit), Depends(ensure_enabled)],
)
async def create_ext_insight(
    request: Request,
    payload: InsightRequest,
    user_id: str = Depends(get_user_id),
    orchestrator: InsightOrchestrator = Depends(get_orchestrator),
) -> dict:
    # Same pipeline as /v1/insights behind the extension rate limiter.
    return await run_insight(request, payload, user_id, orchestrator)
