from __future__ import annotations

from datetime import timedelta

import pytest
from sqlalchemy import func, select

from signplane.core.timeutil import utc_now
from signplane.domain.enums import ServiceStatus
from signplane.domain.models import ServiceRegistryEntry
from signplane.persistence.db import SessionLocal
from signplane.services.registry import (
    deregister_service,
    effective_status,
    get_health_summary,
    get_service,
    record_heartbeat,
    sweep_stale,
)
from signplane.tests.utils.fixtures import create_account, create_location


async def _entry_count() -> int:
    async with SessionLocal() as session:
        result = await session.execute(select(func.count()).select_from(ServiceRegistryEntry))
        return int(result.scalar_one())


def test_effective_status_derives_offline_from_staleness() -> None:
    now = utc_now()
    entry = ServiceRegistryEntry(status="online", last_heartbeat=now - timedelta(seconds=30))
    assert effective_status(entry, now=now) == ServiceStatus.ONLINE

    entry.last_heartbeat = now - timedelta(seconds=121)
    assert effective_status(entry, now=now) == ServiceStatus.OFFLINE

    entry.last_heartbeat = None
    assert effective_status(entry, now=now) == ServiceStatus.OFFLINE

    entry.status = "weird"
    entry.last_heartbeat = now
    assert effective_status(entry, now=now) == ServiceStatus.UNKNOWN


@pytest.mark.asyncio
async def test_repeated_heartbeats_keep_one_entry() -> None:
    for _ in range(3):
        async with SessionLocal() as session:
            await record_heartbeat(session, service_kind="kds", location_id="loc-unit", version="1.2.0")

    assert await _entry_count() == 1
    async with SessionLocal() as session:
        entry = await get_service(session, service_kind="kds", location_id="loc-unit")
    assert entry.instance_id == "kds-loc-unit"
    assert entry.version == "1.2.0"
    assert entry.status == "online"


@pytest.mark.asyncio
async def test_distinct_instances_are_tracked_separately() -> None:
    async with SessionLocal() as session:
        await record_heartbeat(session, service_kind="pos-lite", location_id="loc-unit", instance_id="a")
        await record_heartbeat(session, service_kind="pos-lite", location_id="loc-unit", instance_id="b")
        await record_heartbeat(session, service_kind="kds", location_id="loc-unit", instance_id="a")
    assert await _entry_count() == 3


@pytest.mark.asyncio
async def test_unknown_service_kind_is_rejected() -> None:
    async with SessionLocal() as session:
        with pytest.raises(ValueError):
            await record_heartbeat(session, service_kind="printer", location_id="loc-unit")
    assert await _entry_count() == 0


@pytest.mark.asyncio
async def test_health_summary_counts_stale_entries_as_offline() -> None:
    account_id = await create_account()
    location_id = await create_location(account_id)
    async with SessionLocal() as session:
        await record_heartbeat(session, service_kind="modos-menus", location_id=location_id)
        await record_heartbeat(session, service_kind="kds", location_id=location_id, status="degraded")

    async with SessionLocal() as session:
        fresh = await get_health_summary(session, account_id=account_id)
    assert fresh.total == 2
    assert fresh.online == 1
    assert fresh.degraded == 1
    assert fresh.by_location[location_id]["total"] == 2

    # Without any sweep, a reader three minutes later already sees both offline.
    async with SessionLocal() as session:
        later = await get_health_summary(session, account_id=account_id, now=utc_now() + timedelta(minutes=3))
    assert later.offline == 2
    assert later.online == 0
    assert {item["stored_status"] for item in later.services} == {"online", "degraded"}


@pytest.mark.asyncio
async def test_sweep_is_idempotent() -> None:
    async with SessionLocal() as session:
        await record_heartbeat(session, service_kind="kds", location_id="loc-unit")
        await record_heartbeat(session, service_kind="pos-lite", location_id="loc-unit")

    future = utc_now() + timedelta(minutes=5)
    async with SessionLocal() as session:
        assert await sweep_stale(session, now=future) == 2
    async with SessionLocal() as session:
        assert await sweep_stale(session, now=future) == 0

    # A fresh heartbeat brings the service back online.
    async with SessionLocal() as session:
        await record_heartbeat(session, service_kind="kds", location_id="loc-unit")
    async with SessionLocal() as session:
        entry = await get_service(session, service_kind="kds", location_id="loc-unit")
    assert entry.status == "online"


@pytest.mark.asyncio
async def test_deregister_service_removes_entry() -> None:
    async with SessionLocal() as session:
        await record_heartbeat(session, service_kind="kds", location_id="loc-unit")
    async with SessionLocal() as session:
        assert await deregister_service(session, service_kind="kds", location_id="loc-unit") is True
    async with SessionLocal() as session:
        assert await deregister_service(session, service_kind="kds", location_id="loc-unit") is False
    assert await _entry_count() == 0
