from __future__ import annotations

import argparse
import asyncio
import sys

from lexybrain.persistence.db import SessionLocal
from lexybrain.persistence.repos.plans import upsert_plan_entitlement
from lexybrain.services.entitlements import DEFAULT_ENTITLEMENTS


def _parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Seed monthly AI allowances per plan.")
    parser.add_argument(
        "--plan",
        action="append",
        dest="plans",
        choices=sorted(DEFAULT_ENTITLEMENTS),
        help="Limit seeding to these plan codes (repeatable). Defaults to all.",
    )
    parser.add_argument("--dry-run", action="store_true", help="Print the rows without writing them.")
    return parser.parse_args(argv)


async def seed_entitlements(plans: list[str], *, dry_run: bool) -> int:
    if dry_run:
        for plan_code in plans:
            limits = DEFAULT_ENTITLEMENTS[plan_code]
            print(f"plan={plan_code} ai_calls={limits.ai_calls} ai_brief={limits.ai_brief} ai_sim={limits.ai_sim}")
        return 0

    async with SessionLocal() as session:
        for plan_code in plans:
            limits = DEFAULT_ENTITLEMENTS[plan_code]
            await upsert_plan_entitlement(
                session,
                plan_code=plan_code,
                ai_calls_per_month=limits.ai_calls,
                briefs_per_month=limits.ai_brief,
                sims_per_month=limits.ai_sim,
            )
        await session.commit()
    print(f"Seeded entitlements for {len(plans)} plan(s).")
    return 0


def main(argv: list[str] | None = None) -> int:
    args = _parse_args(argv)
    plans = args.plans or sorted(DEFAULT_ENTITLEMENTS)
    try:
        return asyncio.run(seed_entitlements(plans, dry_run=args.dry_run))
    except Exception as exc:  # noqa: BLE001 - surface any setup or DB errors
        print(f"seed_entitlements failed: {exc}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    raise SystemExit(main())
