from __future__ import annotations

import asyncio
from datetime import date, datetime, timezone

import pytest
from sqlalchemy.dialects import postgresql

from lexybrain.core.errors import QuotaExceeded, StoreUnavailable
from lexybrain.domain.capabilities import QuotaKey
from lexybrain.persistence.repos.usage import counter_lock_stmt
from lexybrain.services.entitlements import EntitlementService, PlanLimits
from lexybrain.services.quota import QuotaService, SqlCounterStore, month_start
from lexybrain.tests.utils.fakes import FixedClock, InMemoryCounterStore, InMemoryEntitlementSource, db_error


def _service(plans: dict[str, str] | None = None, clock: FixedClock | None = None):
    counters = InMemoryCounterStore()
    source = InMemoryEntitlementSource(plans=plans or {})
    service = QuotaService(
        counters=counters,
        entitlements=EntitlementService(source),
        time_provider=clock or FixedClock(),
    )
    return service, counters, source


@pytest.mark.asyncio
async def test_free_plan_allows_two_briefs_then_rejects_without_writing() -> None:
    service, counters, _ = _service()

    first = await service.check_and_consume("u1", QuotaKey.AI_BRIEF)
    second = await service.check_and_consume("u1", QuotaKey.AI_BRIEF)
    assert (first.used, second.used) == (1, 2)
    assert second.limit == 2

    with pytest.raises(QuotaExceeded) as excinfo:
        await service.check_and_consume("u1", QuotaKey.AI_BRIEF)

    assert excinfo.value.used == 2
    assert excinfo.value.limit == 2
    assert excinfo.value.kind == "quota_exceeded"
    assert "ai_brief: 2/2" in excinfo.value.message
    # The rejected attempt leaves the counter unchanged.
    assert len(counters.writes) == 2
    assert counters.values[("u1", date(2026, 3, 1), "ai_brief")] == 2


@pytest.mark.asyncio
async def test_amount_larger_than_remaining_is_rejected() -> None:
    service, counters, _ = _service()
    await service.check_and_consume("u1", QuotaKey.AI_CALLS, amount=19)

    with pytest.raises(QuotaExceeded):
        await service.check_and_consume("u1", QuotaKey.AI_CALLS, amount=2)
    status = await service.check_and_consume("u1", QuotaKey.AI_CALLS, amount=1)
    assert status.used == 20


@pytest.mark.asyncio
async def test_concurrent_consumption_never_exceeds_the_limit() -> None:
    service, counters, _ = _service()

    results = await asyncio.gather(
        *(service.check_and_consume("u1", QuotaKey.AI_BRIEF) for _ in range(5)),
        return_exceptions=True,
    )

    allowed = [result for result in results if not isinstance(result, Exception)]
    rejected = [result for result in results if isinstance(result, QuotaExceeded)]
    assert sorted(status.used for status in allowed) == [1, 2]
    assert len(rejected) == 3
    assert all(error.used == 2 for error in rejected)
    assert counters.values[("u1", date(2026, 3, 1), "ai_brief")] == 2


def test_counter_lock_statement_selects_for_update() -> None:
    stmt = counter_lock_stmt("u1", date(2026, 3, 1), "ai_brief")
    compiled = str(stmt.compile(dialect=postgresql.dialect()))

    assert "FOR UPDATE" in compiled
    assert "usage_counters" in compiled


@pytest.mark.asyncio
async def test_unlimited_plan_never_touches_counters() -> None:
    service, counters, _ = _service(plans={"u-growth": "growth"})

    for _ in range(50):
        status = await service.check_and_consume("u-growth", QuotaKey.AI_BRIEF)

    assert status.allowed is True
    assert status.unlimited is True
    assert status.used == 0
    assert counters.reads == 0
    assert counters.writes == []


@pytest.mark.asyncio
async def test_counters_roll_over_at_month_boundary() -> None:
    clock = FixedClock(datetime(2026, 2, 28, 23, 59, tzinfo=timezone.utc))
    service, counters, _ = _service(clock=clock)

    await service.check_and_consume("u1", QuotaKey.AI_BRIEF)
    await service.check_and_consume("u1", QuotaKey.AI_BRIEF)
    with pytest.raises(QuotaExceeded):
        await service.check_and_consume("u1", QuotaKey.AI_BRIEF)

    clock.now = datetime(2026, 3, 1, 0, 1, tzinfo=timezone.utc)
    status = await service.check_and_consume("u1", QuotaKey.AI_BRIEF)
    assert status.used == 1
    assert ("u1", date(2026, 3, 1), "ai_brief") in counters.values


@pytest.mark.asyncio
async def test_check_only_does_not_mutate() -> None:
    service, counters, _ = _service()
    await service.check_and_consume("u1", QuotaKey.AI_CALLS)

    status = await service.check_only("u1", QuotaKey.AI_CALLS)
    again = await service.check_only("u1", QuotaKey.AI_CALLS)

    assert status.used == again.used == 1
    assert status.allowed is True
    assert len(counters.writes) == 1


@pytest.mark.asyncio
async def test_usage_summary_reports_every_quota_key() -> None:
    service, _, source = _service(plans={"u1": "basic"})
    source.limits["basic"] = PlanLimits(ai_calls=200, ai_brief=20, ai_sim=20)
    await service.check_and_consume("u1", QuotaKey.AI_BRIEF, amount=5)

    summary = await service.usage_summary("u1")

    assert summary.plan_code == "basic"
    assert set(summary.quotas) == {"ai_calls", "ai_brief", "ai_sim"}
    assert summary.quotas["ai_brief"].as_dict() == {"used": 5, "limit": 20, "percentage": 25.0}
    assert summary.quotas["ai_calls"].percentage == 0.0


@pytest.mark.asyncio
async def test_counter_write_failure_is_not_swallowed() -> None:
    class FailingCounters(InMemoryCounterStore):
        async def consume(self, user_id, period_start, key, amount, limit) -> tuple[bool, int]:
            raise StoreUnavailable("Failed to record quota usage")

    service = QuotaService(
        counters=FailingCounters(),
        entitlements=EntitlementService(InMemoryEntitlementSource()),
        time_provider=FixedClock(),
    )
    with pytest.raises(StoreUnavailable):
        await service.check_and_consume("u1", QuotaKey.AI_CALLS)


@pytest.mark.asyncio
async def test_sql_counter_store_maps_database_errors() -> None:
    class BrokenSession:
        async def __aenter__(self):
            raise db_error()

        async def __aexit__(self, *exc_info) -> None:
            return None

    store = SqlCounterStore(BrokenSession)

    with pytest.raises(StoreUnavailable):
        await store.consume("u1", date(2026, 3, 1), "ai_calls", 1, 20)
    with pytest.raises(StoreUnavailable):
        await store.get("u1", date(2026, 3, 1), "ai_calls")


@pytest.mark.asyncio
async def test_entitlement_lookup_failure_degrades_to_free_defaults() -> None:
    source = InMemoryEntitlementSource(plans={"u1": "pro"})
    source.fail = True
    plan = await EntitlementService(source).resolve("u1")

    assert plan.plan_code == "free"
    assert plan.limits.limit_for(QuotaKey.AI_BRIEF) == 2


@pytest.mark.asyncio
async def test_unknown_plan_code_uses_free_limits_and_db_rows_override_defaults() -> None:
    source = InMemoryEntitlementSource(plans={"u1": "Legacy", "u2": "pro"})
    source.limits["pro"] = PlanLimits(ai_calls=10, ai_brief=1, ai_sim=1)
    service = EntitlementService(source)

    legacy = await service.resolve("u1")
    pro = await service.resolve("u2")

    assert legacy.plan_code == "legacy"
    assert legacy.limits.limit_for("ai_calls") == 20
    assert pro.limits.limit_for("ai_calls") == 10


def test_month_start_normalizes_to_utc() -> None:
    assert month_start(datetime(2026, 7, 31, 23, 0, tzinfo=timezone.utc)) == date(2026, 7, 1)
