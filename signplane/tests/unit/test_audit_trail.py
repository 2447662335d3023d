from __future__ import annotations

import asyncio

import pytest
from sqlalchemy import select

from signplane.core.config import get_settings
from signplane.domain.models import AuditEvent
from signplane.persistence.db import SessionLocal
from signplane.persistence.repos.audit import AuditFilters, list_account_events
from signplane.services import audit as audit_service
from signplane.services.audit import PAYMENT_PROVIDER, AuditActor, audit_action, redact


def test_redact_masks_pairing_and_service_credentials() -> None:
    cleaned = redact(
        {
            "location_id": "loc-1",
            "pairing_code": "482913",
            "headers": {"X-Service-Key": "svc", "Stripe-Signature": "t=1,v1=ab"},
            "devices": [{"device_token": "abc", "name": "Menu board"}],
        }
    )

    assert cleaned["location_id"] == "loc-1"
    assert cleaned["pairing_code"] == "[REDACTED]"
    assert cleaned["headers"] == {"X-Service-Key": "[REDACTED]", "Stripe-Signature": "[REDACTED]"}
    assert cleaned["devices"] == [{"device_token": "[REDACTED]", "name": "Menu board"}]


@pytest.mark.asyncio
async def test_audit_action_without_request_uses_actor_account() -> None:
    actor = AuditActor(actor_type="user", actor_id="user-1", role="admin", account_id="acct-1")
    event = await audit_action(None, actor=actor, action="rollout.started", resource=("rollout", "ro-1"))

    assert event is not None
    async with SessionLocal() as session:
        stored = (await session.execute(select(AuditEvent))).scalar_one()
    assert stored.account_id == "acct-1"
    assert stored.actor_role == "admin"
    assert stored.resource_type == "rollout"
    assert stored.request_id is None


@pytest.mark.asyncio
async def test_account_listing_never_returns_other_accounts() -> None:
    await audit_action(None, actor=PAYMENT_PROVIDER, action="billing.invoice.payment_failed", account_id="acct-a")
    await audit_action(None, actor=PAYMENT_PROVIDER, action="billing.invoice.payment_failed", account_id="acct-b")
    await audit_action(None, actor=PAYMENT_PROVIDER, action="billing.checkout.session.completed", account_id="acct-a")

    async with SessionLocal() as session:
        everything, total = await list_account_events(session, "acct-a", AuditFilters(), limit=10)
        failures, failure_total = await list_account_events(
            session, "acct-a", AuditFilters(event_type="billing.invoice.payment_failed"), limit=10
        )

    assert total == 2
    assert {item.account_id for item in everything} == {"acct-a"}
    assert failure_total == 1
    assert failures[0].actor_id == "payment_provider"


@pytest.mark.asyncio
async def test_hung_audit_write_is_abandoned(monkeypatch) -> None:
    async def _hanging_write(event):
        await asyncio.sleep(5)
        return event

    monkeypatch.setattr(audit_service, "_write", _hanging_write)
    monkeypatch.setattr(get_settings(), "audit_write_timeout_ms", 50)

    event = await audit_action(None, actor=PAYMENT_PROVIDER, action="billing.invoice.payment_failed", account_id="acct-a")

    assert event is None
    async with SessionLocal() as session:
        assert (await session.execute(select(AuditEvent))).scalars().all() == []
