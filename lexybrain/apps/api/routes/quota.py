from __future__ import annotations

from fastapi import APIRouter, Depends, Request
from pydantic import BaseModel

from lexybrain.apps.api.deps import get_quota_service, get_user_id
from lexybrain.apps.api.openapi import DEFAULT_ERROR_RESPONSES
from lexybrain.apps.api.response import SuccessEnvelope, success_response
from lexybrain.services.quota import QuotaService


router = APIRouter(tags=["quota"], responses=DEFAULT_ERROR_RESPONSES)


class QuotaUsage(BaseModel):
    used: int
    limit: int
    percentage: float


class QuotaResponse(BaseModel):
    plan_code: str
    quotas: dict[str, QuotaUsage]


@router.get("/quota", response_model=SuccessEnvelope[QuotaResponse])
async def get_quota(
    request: Request,
    user_id: str = Depends(get_user_id),
    quota: QuotaService = Depends(get_quota_service),
) -> dict:
    # Current-period usage for every quota key.
    summary = await quota.usage_summary(user_id)
    payload = QuotaResponse(
        plan_code=summary.plan_code,
        quotas={key: QuotaUsage(**status.as_dict()) for key, status in summary.quotas.items()},
    )
    return success_response(request=request, data=payload)
