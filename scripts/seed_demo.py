from __future__ import annotations

import asyncio
import sys
from dataclasses import dataclass

from signplane.domain.enums import BillingStatus, PlanTier
from signplane.domain.models import Account, FeatureFlag, Location, LocationConfig, Menu
from signplane.persistence.db import SessionLocal
from signplane.services.locations import device_limit_for


DEMO_ACCOUNT_ID = "acct-demo"
DEMO_ACCOUNT_NAME = "Demo Diner Group"
DEMO_MENU_ID = "menu-demo-breakfast"
DEMO_FALLBACK_MENU_ID = "menu-demo-allday"


@dataclass(frozen=True)
class DemoLocation:
    id: str
    name: str
    plan_tier: PlanTier
    active: bool


def build_demo_locations() -> tuple[DemoLocation, ...]:
    # One ready location and one still waiting on its setup fee.
    return (
        DemoLocation(id="loc-demo-downtown", name="Downtown", plan_tier=PlanTier.PRO, active=True),
        DemoLocation(id="loc-demo-airport", name="Airport", plan_tier=PlanTier.STARTER, active=False),
    )


async def seed_demo() -> int:
    async with SessionLocal() as session:
        if await session.get(Account, DEMO_ACCOUNT_ID) is not None:
            print("Demo account already seeded; skipping.")
            return 0
        session.add(
            Account(
                id=DEMO_ACCOUNT_ID,
                name=DEMO_ACCOUNT_NAME,
                billing_status=BillingStatus.PAID.value,
                plan=PlanTier.PRO.value,
            )
        )
        for location in build_demo_locations():
            session.add(
                Location(
                    id=location.id,
                    account_id=DEMO_ACCOUNT_ID,
                    name=location.name,
                    plan_tier=location.plan_tier.value,
                    device_limit=device_limit_for(location.plan_tier),
                    active=location.active,
                    setup_fee_paid=location.active,
                )
            )
        session.add_all(
            [
                Menu(id=DEMO_MENU_ID, account_id=DEMO_ACCOUNT_ID, name="Breakfast", status="published"),
                Menu(id=DEMO_FALLBACK_MENU_ID, account_id=DEMO_ACCOUNT_ID, name="All Day", status="published"),
            ]
        )
        # Flush parents before config rows that reference them.
        await session.flush()
        session.add(
            LocationConfig(
                location_id="loc-demo-downtown",
                active_menu_id=DEMO_MENU_ID,
                fallback_menu_id=DEMO_FALLBACK_MENU_ID,
                config={"theme": "dark", "rotation_seconds": 12},
            )
        )
        session.add_all(
            [
                FeatureFlag(account_id=DEMO_ACCOUNT_ID, flag_key="promo_banner", enabled=True, config={}),
                FeatureFlag(location_id="loc-demo-downtown", flag_key="promo_banner", enabled=False, config={}),
            ]
        )
        await session.commit()
        print(f"Seeded demo account {DEMO_ACCOUNT_ID} with {len(build_demo_locations())} locations.")
        return 0


def main() -> int:
    try:
        return asyncio.run(seed_demo())
    except Exception as exc:  # noqa: BLE001 - surface any setup or DB errors
        print(f"seed_demo failed: {exc}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    raise SystemExit(main())
