from __future__ import annotations

from fastapi import HTTPException, Request, status

from lexybrain.core.config import get_settings
from lexybrain.services.entitlements import EntitlementService, SqlEntitlementSource
from lexybrain.services.orchestrator import InsightOrchestrator, build_orchestrator
from lexybrain.services.quota import QuotaService, SqlCounterStore


_orchestrator: InsightOrchestrator | None = None
_quota_service: QuotaService | None = None


def get_user_id(request: Request) -> str:
    # Identity is asserted by the upstream auth proxy; this service never sees credentials.
    header = get_settings().auth_user_header
    user_id = (request.headers.get(header) or "").strip()
    if not user_id:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail={"code": "AUTH_UNAUTHORIZED", "message": f"Missing {header} header"},
        )
    return user_id


def ensure_enabled() -> None:
    # Kill switch for every generation route.
    if not get_settings().lexybrain_enabled:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail={"code": "LEXYBRAIN_DISABLED", "message": "LexyBrain is currently disabled"},
        )


def get_orchestrator() -> InsightOrchestrator:
    # Lazily build the shared orchestrator.
    global _orchestrator
    if _orchestrator is None:
        _orchestrator = build_orchestrator()
    return _orchestrator


def get_quota_service() -> QuotaService:
    # Lazily build the quota service used by the summary route.
    global _quota_service
    if _quota_service is None:
        from lexybrain.persistence.db import SessionLocal

        entitlements = EntitlementService(SqlEntitlementSource(SessionLocal))
        _quota_service = QuotaService(counters=SqlCounterStore(SessionLocal), entitlements=entitlements)
    return _quota_service


def reset_service_state() -> None:
    # Drop cached singletons so tests can rebuild them.
    global _orchestrator, _quota_service
    _orchestrator = None
    _quota_service = None
