from __future__ import annotations

import logging
from uuid import uuid4

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from signplane.core.errors import AccountNotFoundError, LocationNotFoundError
from signplane.domain.enums import PLAN_DEVICE_LIMITS, DeviceStatus, PlanTier
from signplane.domain.models import Account, Device, Location


logger = logging.getLogger(__name__)


def device_limit_for(plan_tier: str | PlanTier) -> int:
    return PLAN_DEVICE_LIMITS[PlanTier(plan_tier)]


async def get_location(
    session: AsyncSession,
    location_id: str,
    *,
    account_id: str | None = None,
) -> Location:
    location = await session.get(Location, location_id)
    # Treat cross-account lookups as missing so ids cannot be enumerated.
    if location is None or (account_id is not None and location.account_id != account_id):
        raise LocationNotFoundError(f"Location {location_id} not found")
    return location


async def list_locations(session: AsyncSession, *, account_id: str) -> list[Location]:
    result = await session.execute(
        select(Location).where(Location.account_id == account_id).order_by(Location.created_at.asc(), Location.id.asc())
    )
    return list(result.scalars().all())


async def create_location(
    session: AsyncSession,
    *,
    account_id: str,
    name: str,
    address: str | None = None,
    timezone: str | None = None,
    plan_tier: str | PlanTier = PlanTier.STARTER,
) -> Location:
    # New locations stay inactive until the setup fee is confirmed.
    if await session.get(Account, account_id) is None:
        raise AccountNotFoundError(f"Account {account_id} not found")
    tier = PlanTier(plan_tier)
    location = Location(
        id=uuid4().hex,
        account_id=account_id,
        name=name,
        address=address,
        timezone=timezone,
        plan_tier=tier.value,
        device_limit=device_limit_for(tier),
        active=False,
        setup_fee_paid=False,
    )
    session.add(location)
    await session.commit()
    logger.info("location_created location_id=%s account_id=%s plan_tier=%s", location.id, account_id, tier.value)
    return location


async def activate_location(
    session: AsyncSession,
    *,
    location_id: str,
    account_id: str | None = None,
    commit: bool = True,
) -> Location:
    # Activation and setup-fee confirmation always move together.
    location = await get_location(session, location_id, account_id=account_id)
    location.setup_fee_paid = True
    location.active = True
    if commit:
        await session.commit()
    logger.info("location_activated location_id=%s", location.id)
    return location


async def update_location_plan(
    session: AsyncSession,
    *,
    location_id: str,
    plan_tier: str | PlanTier,
    account_id: str | None = None,
) -> Location:
    # Lowering a tier never unpairs devices; it only affects future pairing.
    tier = PlanTier(plan_tier)
    location = await get_location(session, location_id, account_id=account_id)
    location.plan_tier = tier.value
    location.device_limit = device_limit_for(tier)
    await session.commit()
    logger.info("location_plan_updated location_id=%s plan_tier=%s", location.id, tier.value)
    return location


async def deactivate_location(
    session: AsyncSession,
    *,
    location_id: str,
    account_id: str | None = None,
) -> Location:
    # Blocks new pairing at this location; paired devices keep running.
    location = await get_location(session, location_id, account_id=account_id)
    location.active = False
    await session.commit()
    logger.info("location_deactivated location_id=%s", location.id)
    return location


async def location_device_count(session: AsyncSession, location_id: str) -> int:
    result = await session.execute(
        select(func.count())
        .select_from(Device)
        .where(Device.location_id == location_id, Device.status == DeviceStatus.PAIRED.value)
    )
    return int(result.scalar_one() or 0)


async def account_device_count(session: AsyncSession, account_id: str) -> int:
    result = await session.execute(
        select(func.count())
        .select_from(Device)
        .where(Device.account_id == account_id, Device.status == DeviceStatus.PAIRED.value)
    )
    return int(result.scalar_one() or 0)
