from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timedelta
import logging
from typing import Any

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from signplane.core.config import get_settings
from signplane.core.timeutil import ensure_utc, isoformat, utc_now
from signplane.domain.enums import SourceService
from signplane.domain.models import EventLogEntry, Location
from signplane.persistence.db import SessionLocal
from signplane.services.resilience import BestEffortResult, best_effort


logger = logging.getLogger(__name__)

REQUIRED_EVENT_FIELDS = ("event_type", "source_service", "location_id")
_VALID_SOURCES = ", ".join(item.value for item in SourceService)


@dataclass
class EventBatch:
    valid: list[dict[str, Any]] = field(default_factory=list)
    errors: list[dict[str, Any]] = field(default_factory=list)


@dataclass(frozen=True)
class EventPage:
    events: list[EventLogEntry]
    total: int
    limit: int
    offset: int


def _parse_timestamp(value: Any) -> datetime | None:
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return ensure_utc(value)
    return ensure_utc(datetime.fromisoformat(str(value).replace("Z", "+00:00")))


def validate_event_batch(items: list[Any]) -> EventBatch:
    """Split a submitted batch into storable events and per-item errors.

    Each error carries the item's index in the submitted batch so a sender
    can retry only what was rejected.
    """
    batch = EventBatch()
    for index, item in enumerate(items):
        if not isinstance(item, dict):
            batch.errors.append({"index": index, "error": "Event must be an object"})
            continue
        if any(not item.get(name) for name in REQUIRED_EVENT_FIELDS):
            batch.errors.append(
                {"index": index, "error": "Missing required fields: event_type, source_service, location_id"}
            )
            continue
        try:
            source = SourceService(item["source_service"])
        except ValueError:
            batch.errors.append(
                {"index": index, "error": f"Invalid source_service. Must be one of: {_VALID_SOURCES}"}
            )
            continue
        try:
            timestamp = _parse_timestamp(item.get("timestamp"))
        except ValueError:
            batch.errors.append({"index": index, "error": "Invalid timestamp"})
            continue
        payload = item.get("payload")
        batch.valid.append(
            {
                "event_type": str(item["event_type"]),
                "source_service": source.value,
                "location_id": str(item["location_id"]),
                "account_id": item.get("account_id") or item.get("organization_id"),
                "actor_id": item.get("actor_id"),
                "resource_type": item.get("resource_type"),
                "resource_id": item.get("resource_id"),
                "payload": payload if isinstance(payload, dict) else {},
                "timestamp": timestamp or utc_now(),
            }
        )
    return batch


async def _account_ids_for(session: AsyncSession, location_ids: set[str]) -> dict[str, str]:
    if not location_ids:
        return {}
    result = await session.execute(select(Location.id, Location.account_id).where(Location.id.in_(location_ids)))
    return {location_id: account_id for location_id, account_id in result.all()}


async def log_events(session: AsyncSession, events: list[dict[str, Any]]) -> list[EventLogEntry]:
    # Mirror only; stored events are never acted upon.
    missing_accounts = {item["location_id"] for item in events if not item.get("account_id")}
    owners = await _account_ids_for(session, missing_accounts)
    rows = [
        EventLogEntry(
            event_type=item["event_type"],
            source_service=item["source_service"],
            location_id=item["location_id"],
            account_id=item.get("account_id") or owners.get(item["location_id"]),
            actor_id=item.get("actor_id"),
            resource_type=item.get("resource_type"),
            resource_id=item.get("resource_id"),
            payload=item.get("payload") or {},
            timestamp=item.get("timestamp") or utc_now(),
        )
        for item in events
    ]
    session.add_all(rows)
    await session.commit()
    logger.info("events_logged count=%s", len(rows))
    return rows


async def log_internal_event(
    *,
    event_type: str,
    location_id: str,
    account_id: str | None = None,
    resource_type: str | None = None,
    resource_id: str | None = None,
    payload: dict[str, Any] | None = None,
) -> BestEffortResult[list[EventLogEntry]]:
    # Control-plane lifecycle events use their own session so a failed mirror never touches the caller.
    async def _write() -> list[EventLogEntry]:
        async with SessionLocal() as event_session:
            return await log_events(
                event_session,
                [
                    {
                        "event_type": event_type,
                        "source_service": SourceService.MOSM_CLOUD.value,
                        "location_id": location_id,
                        "account_id": account_id,
                        "resource_type": resource_type,
                        "resource_id": resource_id,
                        "payload": payload or {},
                        "timestamp": utc_now(),
                    }
                ],
            )

    return await best_effort(
        _write,
        operation="event_mirror",
        timeout_ms=get_settings().audit_write_timeout_ms,
    )


def serialize_event(entry: EventLogEntry) -> dict[str, Any]:
    return {
        "id": entry.id,
        "event_type": entry.event_type,
        "source_service": entry.source_service,
        "location_id": entry.location_id,
        "account_id": entry.account_id,
        "actor_id": entry.actor_id,
        "resource_type": entry.resource_type,
        "resource_id": entry.resource_id,
        "payload": entry.payload or {},
        "timestamp": isoformat(entry.timestamp),
    }


async def query_events(
    session: AsyncSession,
    *,
    account_id: str,
    event_type: str | None = None,
    source_service: str | None = None,
    location_id: str | None = None,
    start_time: datetime | None = None,
    end_time: datetime | None = None,
    limit: int = 100,
    offset: int = 0,
) -> EventPage:
    filters = [EventLogEntry.account_id == account_id]
    if event_type:
        filters.append(EventLogEntry.event_type == event_type)
    if source_service:
        filters.append(EventLogEntry.source_service == source_service)
    if location_id:
        filters.append(EventLogEntry.location_id == location_id)
    if start_time:
        filters.append(EventLogEntry.timestamp >= ensure_utc(start_time))
    if end_time:
        filters.append(EventLogEntry.timestamp <= ensure_utc(end_time))
    total = await session.execute(select(func.count()).select_from(EventLogEntry).where(*filters))
    rows = await session.execute(
        select(EventLogEntry)
        .where(*filters)
        .order_by(EventLogEntry.timestamp.desc(), EventLogEntry.id.desc())
        .offset(offset)
        .limit(limit)
    )
    return EventPage(events=list(rows.scalars().all()), total=int(total.scalar_one() or 0), limit=limit, offset=offset)


async def event_summary(
    session: AsyncSession,
    *,
    account_id: str,
    location_id: str | None = None,
    hours: int = 24,
    now: datetime | None = None,
) -> dict[str, Any]:
    start_time = (now or utc_now()) - timedelta(hours=hours)
    stmt = select(EventLogEntry.event_type, EventLogEntry.source_service).where(
        EventLogEntry.account_id == account_id,
        EventLogEntry.timestamp >= start_time,
    )
    if location_id:
        stmt = stmt.where(EventLogEntry.location_id == location_id)
    rows = (await session.execute(stmt)).all()
    by_type: dict[str, int] = {}
    by_service: dict[str, int] = {}
    for event_type, source_service in rows:
        by_type[event_type] = by_type.get(event_type, 0) + 1
        by_service[source_service] = by_service.get(source_service, 0) + 1
    return {
        "total": len(rows),
        "period_hours": hours,
        "by_type": by_type,
        "by_service": by_service,
        "start_time": start_time.isoformat(),
    }
