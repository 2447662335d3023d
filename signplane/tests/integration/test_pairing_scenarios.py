from __future__ import annotations

from datetime import timedelta

import pytest
from httpx import ASGITransport, AsyncClient
from sqlalchemy import select

from signplane.apps.api.main import create_app
from signplane.core.timeutil import utc_now
from signplane.domain.models import Device, ServiceRegistryEntry
from signplane.persistence.db import SessionLocal
from signplane.tests.utils.fixtures import (
    create_account,
    create_device,
    create_location,
    service_headers,
    session_headers,
)


def _client() -> AsyncClient:
    return AsyncClient(transport=ASGITransport(app=create_app()), base_url="http://test")


@pytest.mark.asyncio
async def test_unpaid_account_cannot_pair_and_decision_is_logged() -> None:
    account_id = await create_account(billing_status="unpaid")
    location_id = await create_location(account_id)
    device_id = await create_device()
    headers = session_headers(account_id)

    async with _client() as client:
        response = await client.post(
            "/v1/devices/pair",
            json={"device_id": device_id, "account_id": account_id, "location_id": location_id},
            headers=headers,
        )
        logs = await client.get("/v1/enforcement/logs", params={"location_id": location_id}, headers=headers)

    assert response.status_code == 403
    error = response.json()["error"]
    assert error["code"] == "BILLING_INACTIVE"
    assert error["details"]["success"] is False
    assert error["details"]["billing_status"] == "unpaid"
    assert error["details"]["help"]

    assert logs.status_code == 200
    items = logs.json()["data"]["items"]
    assert len(items) == 1
    assert items[0]["result"] == "BLOCKED"
    assert items[0]["code"] == "BILLING_INACTIVE"
    assert items[0]["action"] == "LOCATION_PAIR_DEVICE"


@pytest.mark.asyncio
async def test_full_location_rejects_pairing_with_limit_code() -> None:
    account_id = await create_account(billing_status="paid")
    location_id = await create_location(account_id, plan_tier="starter")
    for _ in range(3):
        await create_device(account_id=account_id, location_id=location_id, paired=True)
    device_id = await create_device()

    async with _client() as client:
        response = await client.post(
            "/v1/devices/pair",
            json={"device_id": device_id, "organization_id": account_id, "location_id": location_id},
            headers=session_headers(account_id),
        )

    assert response.status_code == 403
    body = response.json()
    assert body["error"]["code"] == "DEVICE_LIMIT_EXCEEDED"
    assert body["error"]["details"] == {
        "success": False,
        "error": "DEVICE_LIMIT_EXCEEDED",
        "billing_status": "paid",
        "help": body["error"]["details"]["help"],
    }
    assert body["error"]["details"]["help"]
    assert "device limit" in body["error"]["message"]
    assert "meta" in body


@pytest.mark.asyncio
async def test_pairing_rejection_envelope_is_documented() -> None:
    async with _client() as client:
        schema = (await client.get("/v1/openapi.json")).json()

    rejected = schema["paths"]["/v1/devices/pair"]["post"]["responses"]["403"]
    ref = rejected["content"]["application/json"]["schema"]["$ref"]
    assert ref.endswith("/PairingRejectionEnvelope")
    details = schema["components"]["schemas"]["PairingRejectionDetails"]
    assert set(details["properties"]) == {"success", "error", "billing_status", "help"}


@pytest.mark.asyncio
async def test_trialing_account_pairs_last_free_slot() -> None:
    account_id = await create_account(billing_status="trialing")
    location_id = await create_location(account_id, plan_tier="starter")
    for _ in range(2):
        await create_device(account_id=account_id, location_id=location_id, paired=True)
    headers = session_headers(account_id)

    async with _client() as client:
        registered = await client.post("/v1/devices/register", json={"device_type": "menu-board"})
        device_id = registered.json()["data"]["device_id"]
        paired = await client.post(
            "/v1/devices/pair",
            json={
                "device_id": device_id,
                "account_id": account_id,
                "location_id": location_id,
                "device_name": "Drive-thru board",
            },
            headers=headers,
        )
        preflight = await client.get(
            "/v1/devices/pair/preflight", params={"location_id": location_id}, headers=headers
        )

    assert registered.status_code == 201
    assert paired.status_code == 200
    data = paired.json()["data"]
    assert data["success"] is True
    assert data["device_name"] == "Drive-thru board"
    assert data["paired_at"]
    check = preflight.json()["data"]
    assert check["device_count"] == 3
    assert check["remaining_slots"] == 0
    assert check["allowed"] is False
    assert check["code"] == "DEVICE_LIMIT_EXCEEDED"


@pytest.mark.asyncio
async def test_account_device_cap_spans_locations() -> None:
    account_id = await create_account(billing_status="paid", max_devices=2)
    downtown = await create_location(account_id, plan_tier="pro")
    airport = await create_location(account_id, plan_tier="pro")
    await create_device(account_id=account_id, location_id=downtown, paired=True)
    await create_device(account_id=account_id, location_id=airport, paired=True)
    device_id = await create_device()
    headers = session_headers(account_id)

    async with _client() as client:
        response = await client.post(
            "/v1/devices/pair",
            json={"device_id": device_id, "account_id": account_id, "location_id": airport},
            headers=headers,
        )
        preflight = await client.get("/v1/devices/pair/preflight", params={"location_id": downtown}, headers=headers)

    assert response.status_code == 403
    assert response.json()["error"]["code"] == "DEVICE_LIMIT_EXCEEDED"
    assert "across all locations" in response.json()["error"]["message"]
    check = preflight.json()["data"]
    assert check["allowed"] is False
    assert check["device_count"] == 1
    assert check["account_device_count"] == 2
    assert check["max_devices"] == 2
    assert check["remaining_slots"] == 0
    async with SessionLocal() as session:
        device = await session.get(Device, device_id)
    assert device.status == "registered"


@pytest.mark.asyncio
async def test_repeated_heartbeats_update_single_registry_entry() -> None:
    account_id = await create_account()
    location_id = await create_location(account_id)
    beat = {"service": "modos-menus", "location_id": location_id, "instance_id": "inst-A", "version": "3.1.0"}

    async with _client() as client:
        first = await client.post("/v1/heartbeat", json=beat, headers=service_headers())
        second = await client.post("/v1/heartbeat", json={**beat, "status": "degraded"}, headers=service_headers())
        listing = await client.get(f"/v1/services/locations/{location_id}", headers=session_headers(account_id))

    assert first.status_code == 200
    assert second.status_code == 200
    assert second.json()["data"]["success"] is True
    entries = listing.json()["data"]
    assert len(entries) == 1
    assert entries[0]["instance_id"] == "inst-A"
    assert entries[0]["status"] == "degraded"
    assert entries[0]["last_heartbeat"] is not None


@pytest.mark.asyncio
async def test_execution_reports_drive_rollout_to_failed() -> None:
    account_id = await create_account()
    first_location = await create_location(account_id)
    second_location = await create_location(account_id)
    headers = session_headers(account_id)

    async with _client() as client:
        created = await client.post(
            "/v1/rollouts",
            json={
                "name": "Summer menu",
                "rollout_type": "menu_activation",
                "target_locations": [first_location, second_location],
                "payload": {"menu_id": "menu-summer"},
            },
            headers=headers,
        )
        rollout_id = created.json()["data"]["id"]
        started = await client.post(f"/v1/rollouts/{rollout_id}/start", headers=headers)
        ok_report = await client.post(
            f"/v1/rollout_executions/{rollout_id}/{first_location}",
            json={"status": "completed"},
            headers=service_headers(),
        )
        failed_report = await client.post(
            f"/v1/rollout_executions/{rollout_id}/{second_location}",
            json={"status": "failed", "error_message": "timeout"},
            headers=service_headers(),
        )
        detail = await client.get(f"/v1/rollouts/{rollout_id}", headers=headers)

    assert created.status_code == 201
    assert len(created.json()["data"]["executions"]) == 2
    assert started.json()["data"]["status"] == "in_progress"
    assert ok_report.json()["data"]["rollout_status"] == "in_progress"
    assert failed_report.json()["data"]["rollout_status"] == "failed"
    rollout = detail.json()["data"]
    assert rollout["status"] == "failed"
    assert rollout["completed_at"] is not None
    errors = {item["location_id"]: item["error_message"] for item in rollout["executions"]}
    assert errors[second_location] == "timeout"


@pytest.mark.asyncio
async def test_health_summary_counts_stale_entry_as_offline() -> None:
    account_id = await create_account()
    location_id = await create_location(account_id)
    async with SessionLocal() as session:
        session.add(
            ServiceRegistryEntry(
                service_kind="modos-menus",
                location_id=location_id,
                instance_id="modos-menus-1",
                status="online",
                last_heartbeat=utc_now() - timedelta(minutes=3),
                metadata_json={},
            )
        )
        await session.commit()

    async with _client() as client:
        response = await client.get(
            "/v1/services/health", params={"location_id": location_id}, headers=session_headers(account_id)
        )

    assert response.status_code == 200
    summary = response.json()["data"]
    assert summary["total"] == 1
    assert summary["offline"] == 1
    assert summary["online"] == 0
    assert summary["services"][0]["stored_status"] == "online"


@pytest.mark.asyncio
async def test_paired_device_keeps_running_after_location_deactivation() -> None:
    account_id = await create_account(billing_status="paid")
    location_id = await create_location(account_id)
    device_id = await create_device()
    headers = session_headers(account_id)

    async with _client() as client:
        paired = await client.post(
            "/v1/devices/pair",
            json={"device_id": device_id, "account_id": account_id, "location_id": location_id},
            headers=headers,
        )
        await client.post(f"/v1/locations/{location_id}/deactivate", headers=headers)
        ack = await client.post(f"/v1/devices/{device_id}/heartbeat", json={"status": "ok"})

    assert paired.status_code == 200
    assert ack.status_code == 200
    data = ack.json()["data"]
    assert data["acknowledged"] is True
    assert data["commands"] == []
    async with SessionLocal() as session:
        device = (await session.execute(select(Device).where(Device.id == device_id))).scalar_one()
    assert device.status == "paired"
