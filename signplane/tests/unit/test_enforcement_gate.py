from __future__ import annotations

import asyncio

import pytest
from sqlalchemy import func, select
from sqlalchemy.exc import OperationalError

from signplane.core.config import get_settings
from signplane.core.errors import EnforcementUnavailableError
from signplane.domain.enums import EnforcementCode
from signplane.domain.models import Account, Device, EnforcementLogEntry, Location
from signplane.persistence.db import SessionLocal
from signplane.persistence.repos import enforcement_log as enforcement_log_repo
from signplane.services import devices as device_service
from signplane.services.enforcement import can_pair, evaluate_pairing, remaining_slots
from signplane.tests.utils.fixtures import create_account, create_device, create_location


def _account(billing_status: str, max_devices: int | None = None) -> Account:
    return Account(id="acct-unit", name="Unit", billing_status=billing_status, plan="pro", max_devices=max_devices)


def _location(*, active: bool = True, setup_fee_paid: bool = True, device_limit: int = 3) -> Location:
    return Location(
        id="loc-unit",
        account_id="acct-unit",
        name="Unit Store",
        plan_tier="starter",
        device_limit=device_limit,
        active=active,
        setup_fee_paid=setup_fee_paid,
    )


async def _log_count(account_id: str) -> int:
    async with SessionLocal() as session:
        result = await session.execute(
            select(func.count()).select_from(EnforcementLogEntry).where(EnforcementLogEntry.account_id == account_id)
        )
        return int(result.scalar_one())


def test_gate_checks_billing_before_everything_else() -> None:
    # Every check fails here; billing must be the reported reason.
    decision = can_pair(_account("past_due"), _location(active=False, setup_fee_paid=False), 99)
    assert not decision.allowed
    assert decision.code == EnforcementCode.BILLING_INACTIVE


def test_gate_order_after_billing() -> None:
    paid = _account("paid")
    assert can_pair(paid, _location(active=False, setup_fee_paid=False), 99).code == EnforcementCode.LOCATION_INACTIVE
    assert can_pair(paid, _location(setup_fee_paid=False), 99).code == EnforcementCode.SETUP_FEE_NOT_PAID
    assert can_pair(paid, _location(device_limit=3), 3).code == EnforcementCode.DEVICE_LIMIT_REACHED
    assert can_pair(paid, _location(device_limit=3), 2).allowed


def test_trialing_accounts_may_pair() -> None:
    assert can_pair(_account("trialing"), _location(), 0).allowed


def test_account_plan_caps_devices_across_locations() -> None:
    capped = _account("paid", max_devices=5)
    blocked = can_pair(capped, _location(device_limit=25), 1, account_device_count=5)
    assert blocked.code == EnforcementCode.DEVICE_LIMIT_REACHED
    assert "across all locations" in blocked.message
    assert can_pair(capped, _location(device_limit=25), 1, account_device_count=4).allowed
    # No account cap means only the location limit applies.
    assert can_pair(_account("paid"), _location(device_limit=25), 1, account_device_count=500).allowed


def test_remaining_slots_never_negative() -> None:
    assert remaining_slots(_location(device_limit=3), 1) == 2
    assert remaining_slots(_location(device_limit=3), 5) == 0
    assert remaining_slots(_location(device_limit=25), 1, _account("paid", max_devices=5), 4) == 1
    assert remaining_slots(_location(device_limit=25), 1, _account("paid"), 400) == 24


@pytest.mark.asyncio
async def test_each_decision_writes_exactly_one_log_entry() -> None:
    account_id = await create_account(billing_status="paid")
    location_id = await create_location(account_id)

    async with SessionLocal() as session:
        account = await session.get(Account, account_id)
        location = await session.get(Location, location_id)
        allowed = await evaluate_pairing(account=account, location=location, current_device_count=0)
        assert allowed.allowed
        assert await _log_count(account_id) == 1

        blocked = await evaluate_pairing(account=account, location=location, current_device_count=3)
        assert not blocked.allowed
        assert await _log_count(account_id) == 2

    async with SessionLocal() as session:
        rows = (
            await session.execute(
                select(EnforcementLogEntry)
                .where(EnforcementLogEntry.account_id == account_id)
                .order_by(EnforcementLogEntry.id.asc())
            )
        ).scalars().all()
    assert [row.result for row in rows] == ["ALLOWED", "BLOCKED"]
    assert rows[1].code == "DEVICE_LIMIT_REACHED"
    assert rows[1].billing_status == "paid"
    assert rows[1].device_count == 3
    assert rows[1].device_limit == 3


@pytest.mark.asyncio
async def test_failed_log_write_does_not_change_decision(monkeypatch) -> None:
    account_id = await create_account(billing_status="paid")
    location_id = await create_location(account_id)

    async def _broken_append(session, entry):
        raise OperationalError("INSERT", {}, Exception("disk full"))

    monkeypatch.setattr(enforcement_log_repo, "append", _broken_append)
    async with SessionLocal() as session:
        account = await session.get(Account, account_id)
        location = await session.get(Location, location_id)
        decision = await evaluate_pairing(account=account, location=location, current_device_count=0)
    assert decision.allowed


@pytest.mark.asyncio
async def test_pairing_state_read_failure_denies(monkeypatch) -> None:
    async def _unavailable(session, location_id):
        raise OperationalError("SELECT", {}, Exception("connection refused"))

    account_id = await create_account(billing_status="paid")
    location_id = await create_location(account_id)
    device_id = await create_device()
    monkeypatch.setattr(device_service, "location_device_count", _unavailable)

    async with SessionLocal() as session:
        with pytest.raises(EnforcementUnavailableError):
            await device_service.pair_device(
                session, device_id=device_id, account_id=account_id, location_id=location_id
            )

    async with SessionLocal() as session:
        device = await session.get(Device, device_id)
    assert device.status == "registered"
    assert await _log_count(account_id) == 0


@pytest.mark.asyncio
async def test_hung_log_write_does_not_block_pairing(monkeypatch) -> None:
    account_id = await create_account(billing_status="paid")
    location_id = await create_location(account_id)
    device_id = await create_device()

    async def _hanging_append(session, entry):
        await asyncio.sleep(5)
        return entry

    monkeypatch.setattr(enforcement_log_repo, "append", _hanging_append)
    monkeypatch.setattr(get_settings(), "audit_write_timeout_ms", 50)

    async with SessionLocal() as session:
        outcome = await device_service.pair_device(
            session, device_id=device_id, account_id=account_id, location_id=location_id
        )
    assert outcome.success

    async with SessionLocal() as session:
        device = await session.get(Device, device_id)
    assert device.status == "paired"
    assert device.location_id == location_id
    assert await _log_count(account_id) == 0
