from __future__ import annotations

import json
import time

import pytest
from httpx import ASGITransport, AsyncClient
from sqlalchemy import select

from signplane.apps.api.main import create_app
from signplane.core.config import get_settings
from signplane.domain.models import Account, AuditEvent
from signplane.persistence.db import SessionLocal
from signplane.services.billing import build_webhook_signature
from signplane.tests.utils.fixtures import (
    create_account,
    create_device,
    create_location,
    service_headers,
    session_headers,
)


def _client() -> AsyncClient:
    return AsyncClient(transport=ASGITransport(app=create_app()), base_url="http://test")


def _signed(event: dict) -> tuple[bytes, dict[str, str]]:
    settings = get_settings()
    body = json.dumps(event).encode("utf-8")
    timestamp = int(time.time())
    signature = build_webhook_signature(settings.payment_webhook_secret, body, timestamp)
    return body, {
        settings.payment_signature_header: f"t={timestamp},v1={signature}",
        "Content-Type": "application/json",
    }


async def _audit_events(event_type: str) -> list[AuditEvent]:
    async with SessionLocal() as session:
        result = await session.execute(select(AuditEvent).where(AuditEvent.event_type == event_type))
        return list(result.scalars().all())


@pytest.mark.asyncio
async def test_health_endpoints_are_public() -> None:
    async with _client() as client:
        health = await client.get("/v1/health")
        ready = await client.get("/v1/health/ready")

    assert health.json()["data"] == {"status": "ok"}
    assert health.headers["X-Request-Id"]
    assert ready.status_code == 200
    assert ready.json()["data"]["database"] == "ok"
    assert ready.json()["data"]["dialect"] in {"sqlite", "postgresql"}


@pytest.mark.asyncio
async def test_admin_routes_require_session_and_audit_failures() -> None:
    async with _client() as client:
        missing = await client.get("/v1/locations")
        garbage = await client.get("/v1/locations", headers={"Authorization": "Bearer nope"})

    assert missing.status_code == 401
    assert missing.json()["error"]["code"] == "AUTH_UNAUTHORIZED"
    assert garbage.status_code == 401
    assert len(await _audit_events("auth.access.failure")) == 2


@pytest.mark.asyncio
async def test_viewer_role_and_foreign_account_are_forbidden() -> None:
    account_id = await create_account()
    other_account_id = await create_account()
    location_id = await create_location(account_id)
    device_id = await create_device()

    async with _client() as client:
        viewer = await client.get("/v1/locations", headers=session_headers(account_id, role="viewer"))
        foreign = await client.post(
            "/v1/devices/pair",
            json={"device_id": device_id, "account_id": other_account_id, "location_id": location_id},
            headers=session_headers(account_id),
        )
        cross_account = await client.get(f"/v1/locations/{location_id}", headers=session_headers(other_account_id))

    assert viewer.status_code == 403
    assert viewer.json()["error"]["code"] == "AUTH_FORBIDDEN"
    assert len(await _audit_events("rbac.forbidden")) == 1
    assert foreign.status_code == 403
    assert foreign.json()["error"]["code"] == "AUTH_FORBIDDEN"
    # Another account's location reads as missing.
    assert cross_account.status_code == 404
    assert cross_account.json()["error"]["code"] == "LOCATION_NOT_FOUND"


@pytest.mark.asyncio
async def test_service_routes_require_service_key() -> None:
    beat = {"service": "kds", "location_id": "loc-any"}
    async with _client() as client:
        missing = await client.post("/v1/heartbeat", json=beat)
        wrong = await client.post("/v1/heartbeat", json=beat, headers={"X-Service-Key": "wrong"})
        invalid_service = await client.post(
            "/v1/heartbeat", json={**beat, "service": "printer"}, headers=service_headers()
        )
        missing_location = await client.post(
            "/v1/heartbeat", json={"service": "kds"}, headers=service_headers()
        )

    assert missing.status_code == 401
    assert missing.json()["error"]["code"] == "SERVICE_KEY_INVALID"
    assert wrong.status_code == 401
    assert invalid_service.status_code == 400
    assert invalid_service.json()["error"]["code"] == "INVALID_SERVICE"
    assert "modos-menus, pos-lite, kds" in invalid_service.json()["error"]["message"]
    assert missing_location.status_code == 422


@pytest.mark.asyncio
async def test_location_lifecycle_through_admin_api() -> None:
    account_id = await create_account()
    headers = session_headers(account_id, role="owner")

    async with _client() as client:
        created = await client.post("/v1/locations", json={"name": "Airport", "plan_tier": "starter"}, headers=headers)
        location_id = created.json()["data"]["id"]
        upgraded = await client.patch(f"/v1/locations/{location_id}/plan", json={"plan_tier": "pro"}, headers=headers)
        listing = await client.get("/v1/locations", headers=headers)
        audit = await client.get("/v1/audit/events", params={"resource_type": "location"}, headers=headers)

    assert created.status_code == 201
    location = created.json()["data"]
    assert location["active"] is False
    assert location["setup_fee_paid"] is False
    assert location["device_limit"] == 3
    assert upgraded.json()["data"]["device_limit"] == 25
    assert [item["id"] for item in listing.json()["data"]] == [location_id]
    assert listing.json()["data"][0]["device_count"] == 0
    assert len(await _audit_events("location.created")) == 1
    trail = audit.json()["data"]
    assert trail["total"] == 2
    assert [item["action"] for item in trail["items"]] == ["location.plan_updated", "location.created"]
    assert trail["items"][0]["actor"]["role"] == "owner"


@pytest.mark.asyncio
async def test_signed_webhook_updates_billing_without_touching_devices() -> None:
    account_id = await create_account(billing_status="paid", payment_customer_id="cus_api")
    location_id = await create_location(account_id)
    device_id = await create_device(account_id=account_id, location_id=location_id, paired=True)
    body, headers = _signed(
        {
            "id": "evt_api_1",
            "type": "customer.subscription.deleted",
            "data": {"object": {"id": "sub_api", "customer": "cus_api", "status": "canceled"}},
        }
    )

    async with _client() as client:
        webhook = await client.post("/v1/billing/webhook", content=body, headers=headers)
        ack = await client.post(f"/v1/devices/{device_id}/heartbeat")

    assert webhook.status_code == 200
    assert webhook.json()["data"] == {
        "received": True,
        "event_type": "customer.subscription.deleted",
        "handled": True,
    }
    async with SessionLocal() as session:
        account = await session.get(Account, account_id)
    assert account.billing_status == "unpaid"
    # The device is told about billing but never told to stop.
    data = ack.json()["data"]
    assert data["acknowledged"] is True
    assert data["billing_status"] == "unpaid"
    assert data["billing_active"] is False
    assert data["commands"] == []
    assert len(await _audit_events("billing.customer.subscription.deleted")) == 1


@pytest.mark.asyncio
async def test_webhook_with_bad_signature_is_rejected() -> None:
    body, headers = _signed({"type": "invoice.payment_failed", "data": {"object": {}}})
    headers[get_settings().payment_signature_header] = "t=1,v1=deadbeef"

    async with _client() as client:
        response = await client.post("/v1/billing/webhook", content=body, headers=headers)

    assert response.status_code == 400
    assert response.json()["error"]["code"] == "WEBHOOK_SIGNATURE_INVALID"


@pytest.mark.asyncio
async def test_event_ingest_accepts_partial_batches() -> None:
    account_id = await create_account()
    location_id = await create_location(account_id)

    async with _client() as client:
        partial = await client.post(
            "/v1/events",
            json=[
                {"event_type": "order.created", "source_service": "pos-lite", "location_id": location_id},
                {"event_type": "order.created", "source_service": "fax", "location_id": location_id},
            ],
            headers=service_headers(),
        )
        single = await client.post(
            "/v1/events",
            json={"event_type": "ticket.bumped", "source_service": "kds", "location_id": location_id},
            headers=service_headers(),
        )
        rejected = await client.post("/v1/events", json=[{"event_type": "x"}], headers=service_headers())
        listing = await client.get("/v1/events", headers=session_headers(account_id))
        summary = await client.get("/v1/events/summary", params={"hours": 1}, headers=session_headers(account_id))

    assert partial.status_code == 201
    assert partial.json()["data"]["inserted"] == 1
    assert partial.json()["data"]["errors"][0]["index"] == 1
    assert single.json()["data"]["inserted"] == 1
    assert rejected.status_code == 400
    assert rejected.json()["error"]["code"] == "NO_VALID_EVENTS"
    assert rejected.json()["error"]["details"]["errors"][0]["index"] == 0
    assert listing.json()["data"]["total"] == 2
    assert summary.json()["data"]["by_service"] == {"pos-lite": 1, "kds": 1}


@pytest.mark.asyncio
async def test_config_is_written_by_admins_and_read_by_services() -> None:
    account_id = await create_account()
    location_id = await create_location(account_id)
    headers = session_headers(account_id)

    async with _client() as client:
        account_flag = await client.put(
            "/v1/config/features", json={"flag_key": "promo_banner", "enabled": True}, headers=headers
        )
        location_flag = await client.put(
            "/v1/config/features",
            json={"flag_key": "promo_banner", "enabled": False, "location_id": location_id},
            headers=headers,
        )
        updated = await client.put(
            f"/v1/config/location/{location_id}", json={"config": {"theme": "night"}}, headers=headers
        )
        features = await client.get(f"/v1/config/features/{location_id}", headers=service_headers())
        served = await client.get(f"/v1/config/location/{location_id}", headers=service_headers())
        unauthenticated = await client.get(f"/v1/config/location/{location_id}")

    assert account_flag.json()["data"]["account_id"] == account_id
    assert location_flag.json()["data"]["location_id"] == location_id
    assert updated.json()["data"]["config"] == {"theme": "night"}
    assert features.json()["data"]["flags"]["promo_banner"]["enabled"] is False
    assert served.json()["data"]["location"]["id"] == location_id
    assert unauthenticated.status_code == 401


@pytest.mark.asyncio
async def test_rollout_rollback_and_state_errors_over_api() -> None:
    account_id = await create_account()
    location_id = await create_location(account_id)
    headers = session_headers(account_id)

    async with _client() as client:
        empty = await client.post(
            "/v1/rollouts",
            json={"name": "Nothing", "rollout_type": "config_update", "target_locations": []},
            headers=headers,
        )
        created = await client.post(
            "/v1/rollouts",
            json={"name": "Prices", "rollout_type": "config_update", "target_locations": [location_id]},
            headers=headers,
        )
        rollout_id = created.json()["data"]["id"]
        early_rollback = await client.post(f"/v1/rollouts/{rollout_id}/rollback", headers=headers)
        await client.post(f"/v1/rollouts/{rollout_id}/start", headers=headers)
        rollback = await client.post(f"/v1/rollouts/{rollout_id}/rollback", headers=headers)
        listing = await client.get("/v1/rollouts", params={"status": "rolled_back"}, headers=headers)
        missing = await client.get("/v1/rollouts/does-not-exist", headers=headers)

    assert empty.status_code == 400
    assert empty.json()["error"]["code"] == "ROLLOUT_INVALID"
    assert early_rollback.status_code == 409
    assert early_rollback.json()["error"]["code"] == "ROLLOUT_INVALID_STATE"
    assert rollback.status_code == 201
    inverse = rollback.json()["data"]
    assert inverse["rollback_of"] == rollout_id
    assert inverse["payload"]["is_rollback"] is True
    assert [item["id"] for item in listing.json()["data"]["items"]] == [rollout_id]
    assert missing.status_code == 404
    assert len(await _audit_events("rollout.rolled_back")) == 1
