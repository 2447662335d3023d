from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest

from signplane.persistence.db import SessionLocal
from signplane.services.events import event_summary, log_events, query_events, validate_event_batch
from signplane.tests.utils.fixtures import create_account, create_location


def test_validate_event_batch_reports_per_item_errors() -> None:
    batch = validate_event_batch(
        [
            {"event_type": "order.created", "source_service": "pos-lite", "location_id": "loc-1"},
            {"event_type": "order.created", "location_id": "loc-1"},
            {"event_type": "x", "source_service": "printer", "location_id": "loc-1"},
            "not-an-object",
            {"event_type": "x", "source_service": "kds", "location_id": "loc-1", "timestamp": "yesterday"},
        ]
    )

    assert len(batch.valid) == 1
    assert [error["index"] for error in batch.errors] == [1, 2, 3, 4]
    assert "Missing required fields" in batch.errors[0]["error"]
    assert "Invalid source_service" in batch.errors[1]["error"]


def test_validate_event_batch_normalizes_timestamps_and_aliases() -> None:
    batch = validate_event_batch(
        [
            {
                "event_type": "menu.published",
                "source_service": "modos-menus",
                "location_id": "loc-1",
                "organization_id": "acct-legacy",
                "timestamp": "2026-01-01T12:00:00Z",
                "payload": "not-a-dict",
            }
        ]
    )

    item = batch.valid[0]
    assert item["account_id"] == "acct-legacy"
    assert item["timestamp"] == datetime(2026, 1, 1, 12, 0, tzinfo=timezone.utc)
    assert item["payload"] == {}


@pytest.mark.asyncio
async def test_logged_events_inherit_account_from_location() -> None:
    account_id = await create_account()
    location_id = await create_location(account_id)
    batch = validate_event_batch(
        [
            {"event_type": "order.created", "source_service": "pos-lite", "location_id": location_id},
            {"event_type": "order.ready", "source_service": "kds", "location_id": location_id},
        ]
    )
    async with SessionLocal() as session:
        rows = await log_events(session, batch.valid)
    assert {row.account_id for row in rows} == {account_id}

    async with SessionLocal() as session:
        page = await query_events(session, account_id=account_id, source_service="kds")
    assert page.total == 1
    assert page.events[0].event_type == "order.ready"


@pytest.mark.asyncio
async def test_query_and_summary_respect_time_windows() -> None:
    account_id = await create_account()
    location_id = await create_location(account_id)
    now = datetime.now(timezone.utc)
    batch = validate_event_batch(
        [
            {
                "event_type": "order.created",
                "source_service": "pos-lite",
                "location_id": location_id,
                "timestamp": (now - timedelta(hours=30)).isoformat(),
            },
            {
                "event_type": "order.created",
                "source_service": "pos-lite",
                "location_id": location_id,
                "timestamp": (now - timedelta(hours=1)).isoformat(),
            },
            {
                "event_type": "menu.published",
                "source_service": "modos-menus",
                "location_id": location_id,
                "timestamp": (now - timedelta(minutes=5)).isoformat(),
            },
        ]
    )
    async with SessionLocal() as session:
        await log_events(session, batch.valid)

    async with SessionLocal() as session:
        recent = await query_events(session, account_id=account_id, start_time=now - timedelta(hours=2))
        summary = await event_summary(session, account_id=account_id, hours=24, now=now)
    assert recent.total == 2
    # Newest first.
    assert recent.events[0].event_type == "menu.published"
    assert summary["total"] == 2
    assert summary["by_type"] == {"order.created": 1, "menu.published": 1}
    assert summary["by_service"] == {"pos-lite": 1, "modos-menus": 1}
