from __future__ import annotations

from dataclasses import dataclass
import logging
from typing import Callable, Protocol

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from lexybrain.domain.capabilities import QuotaKey
from lexybrain.persistence.repos import plans as plans_repo


logger = logging.getLogger(__name__)

DEFAULT_PLAN_CODE = "free"
UNLIMITED = -1


@dataclass(frozen=True)
class PlanLimits:
    # Monthly allowances per quota key; -1 is unlimited.
    ai_calls: int
    ai_brief: int
    ai_sim: int

    def limit_for(self, quota_key: QuotaKey | str) -> int:
        # Missing keys fall back to the free allowance.
        key = QuotaKey(quota_key)
        if key == QuotaKey.AI_BRIEF:
            return self.ai_brief
        if key == QuotaKey.AI_SIM:
            return self.ai_sim
        return self.ai_calls


@dataclass(frozen=True)
class ResolvedPlan:
    plan_code: str
    limits: PlanLimits


DEFAULT_ENTITLEMENTS: dict[str, PlanLimits] = {
    "free": PlanLimits(ai_calls=20, ai_brief=2, ai_sim=2),
    "basic": PlanLimits(ai_calls=200, ai_brief=20, ai_sim=20),
    "pro": PlanLimits(ai_calls=2000, ai_brief=100, ai_sim=200),
    "growth": PlanLimits(ai_calls=UNLIMITED, ai_brief=UNLIMITED, ai_sim=UNLIMITED),
}


def default_limits(plan_code: str) -> PlanLimits:
    # Unknown plan codes get the most restrictive tier.
    return DEFAULT_ENTITLEMENTS.get(plan_code, DEFAULT_ENTITLEMENTS[DEFAULT_PLAN_CODE])


class EntitlementSource(Protocol):
    async def get_user_plan(self, user_id: str) -> str | None:
        ...

    async def get_plan_limits(self, plan_code: str) -> PlanLimits | None:
        ...


class SqlEntitlementSource:
    def __init__(self, session_factory: Callable[[], AsyncSession]) -> None:
        self._session_factory = session_factory

    async def get_user_plan(self, user_id: str) -> str | None:
        # Plan code from the user profile, if any.
        async with self._session_factory() as session:
            return await plans_repo.get_user_plan(session, user_id)

    async def get_plan_limits(self, plan_code: str) -> PlanLimits | None:
        async with self._session_factory() as session:
            row = await plans_repo.get_plan_entitlement(session, plan_code)
        if row is None:
            return None
        return PlanLimits(
            ai_calls=int(row.ai_calls_per_month),
            ai_brief=int(row.briefs_per_month),
            ai_sim=int(row.sims_per_month),
        )


class EntitlementService:
    def __init__(self, source: EntitlementSource) -> None:
        self._source = source

    async def resolve(self, user_id: str) -> ResolvedPlan:
        # Resolve the user's plan code, then its limits.
        plan_code = await self._resolve_plan_code(user_id)
        try:
            limits = await self._source.get_plan_limits(plan_code)
        except SQLAlchemyError as exc:
            # Entitlement lookups degrade to the built-in table.
            logger.warning("plan_entitlements_unavailable plan_code=%s", plan_code, exc_info=exc)
            limits = None
        if limits is None:
            limits = default_limits(plan_code)
        return ResolvedPlan(plan_code=plan_code, limits=limits)

    async def _resolve_plan_code(self, user_id: str) -> str:
        # Profile lookups degrade to the default plan.
        try:
            plan_code = await self._source.get_user_plan(user_id)
        except SQLAlchemyError as exc:
            logger.warning("user_plan_lookup_failed user_id=%s", user_id, exc_info=exc)
            return DEFAULT_PLAN_CODE
        if not plan_code:
            return DEFAULT_PLAN_CODE
        return plan_code.strip().lower()
