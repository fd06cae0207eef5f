from __future__ import annotations

from fastapi import APIRouter, Request
from pydantic import BaseModel

from lexybrain.apps.api.response import SuccessEnvelope, success_response
from lexybrain.core.config import get_settings

router = APIRouter(tags=["health"])


class HealthResponse(BaseModel):
    status: str
    lexybrain_enabled: bool


@router.get("/health", response_model=SuccessEnvelope[HealthResponse])
async def health(request: Request) -> dict:
    payload = HealthResponse(status="ok", lexybrain_enabled=get_settings().lexybrain_enabled)
    return success_response(request=request, data=payload)
