from __future__ import annotations

from uuid import uuid4

from signplane.core.config import get_settings
from signplane.core.timeutil import utc_now
from signplane.domain.enums import PLAN_DEVICE_LIMITS, DeviceStatus, PlanTier
from signplane.domain.models import Account, Device, Location
from signplane.persistence.db import SessionLocal
from signplane.services.tokens import issue_session_token


def unique_id(prefix: str) -> str:
    return f"{prefix}-{uuid4().hex[:12]}"


async def create_account(
    *,
    billing_status: str = "paid",
    plan: str = "pro",
    payment_customer_id: str | None = None,
    max_devices: int | None = None,
) -> str:
    account_id = unique_id("acct")
    async with SessionLocal() as session:
        session.add(
            Account(
                id=account_id,
                name="Test Account",
                billing_status=billing_status,
                plan=plan,
                payment_customer_id=payment_customer_id,
                max_devices=max_devices,
            )
        )
        await session.commit()
    return account_id


async def create_location(
    account_id: str,
    *,
    plan_tier: str = "starter",
    active: bool = True,
    setup_fee_paid: bool = True,
    device_limit: int | None = None,
) -> str:
    location_id = unique_id("loc")
    async with SessionLocal() as session:
        session.add(
            Location(
                id=location_id,
                account_id=account_id,
                name=f"Location {location_id[-4:]}",
                plan_tier=plan_tier,
                device_limit=device_limit if device_limit is not None else PLAN_DEVICE_LIMITS[PlanTier(plan_tier)],
                active=active,
                setup_fee_paid=setup_fee_paid,
            )
        )
        await session.commit()
    return location_id


async def create_device(
    *,
    account_id: str | None = None,
    location_id: str | None = None,
    paired: bool = False,
) -> str:
    device_id = unique_id("dev")
    async with SessionLocal() as session:
        session.add(
            Device(
                id=device_id,
                device_type="menu-board",
                status=(DeviceStatus.PAIRED if paired else DeviceStatus.REGISTERED).value,
                account_id=account_id if paired else None,
                location_id=location_id if paired else None,
                name=f"Device {device_id[-4:]}" if paired else None,
                registered_at=utc_now(),
                paired_at=utc_now() if paired else None,
            )
        )
        await session.commit()
    return device_id


async def set_billing_status(account_id: str, billing_status: str) -> None:
    async with SessionLocal() as session:
        account = await session.get(Account, account_id)
        account.billing_status = billing_status
        await session.commit()


def session_headers(account_id: str, *, role: str = "admin", subject: str = "user-test") -> dict[str, str]:
    token = issue_session_token(subject=subject, account_id=account_id, role=role)
    return {"Authorization": f"Bearer {token}"}


def service_headers() -> dict[str, str]:
    settings = get_settings()
    return {settings.service_key_header: settings.service_key}
