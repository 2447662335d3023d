from __future__ import annotations

from datetime import datetime
from typing import Any

from sqlalchemy import delete, select, update
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.ext.asyncio import AsyncSession

from signplane.domain.enums import ServiceStatus
from signplane.domain.models import Location, ServiceRegistryEntry
from signplane.persistence.db import dialect_name


def _insert_for(session: AsyncSession):
    # Both dialects expose the same ON CONFLICT DO UPDATE construct.
    if dialect_name(session) == "sqlite":
        return sqlite_insert
    return pg_insert


async def upsert_heartbeat(
    session: AsyncSession,
    *,
    service_kind: str,
    location_id: str,
    instance_id: str,
    status: str,
    version: str | None,
    base_url: str | None,
    metadata: dict[str, Any] | None,
    now: datetime,
) -> None:
    # Last writer wins on the (service, location, instance) key.
    insert = _insert_for(session)
    values = {
        "service_kind": service_kind,
        "location_id": location_id,
        "instance_id": instance_id,
        "status": status,
        "version": version,
        "base_url": base_url,
        "metadata_json": metadata or {},
        "last_heartbeat": now,
        "updated_at": now,
    }
    stmt = insert(ServiceRegistryEntry).values(**values)
    stmt = stmt.on_conflict_do_update(
        index_elements=["service_kind", "location_id", "instance_id"],
        set_={
            "status": stmt.excluded.status,
            "version": stmt.excluded.version,
            "base_url": stmt.excluded.base_url,
            "metadata_json": stmt.excluded.metadata_json,
            "last_heartbeat": stmt.excluded.last_heartbeat,
            "updated_at": stmt.excluded.updated_at,
        },
    )
    await session.execute(stmt)
    await session.commit()


async def get_entry(
    session: AsyncSession,
    *,
    service_kind: str,
    location_id: str,
    instance_id: str | None = None,
) -> ServiceRegistryEntry | None:
    stmt = select(ServiceRegistryEntry).where(
        ServiceRegistryEntry.service_kind == service_kind,
        ServiceRegistryEntry.location_id == location_id,
    )
    if instance_id:
        stmt = stmt.where(ServiceRegistryEntry.instance_id == instance_id)
    # Without an instance id, prefer the most recently seen instance.
    stmt = stmt.order_by(ServiceRegistryEntry.last_heartbeat.desc()).limit(1)
    result = await session.execute(stmt)
    return result.scalar_one_or_none()


async def list_entries(
    session: AsyncSession,
    *,
    account_id: str | None = None,
    location_id: str | None = None,
) -> list[ServiceRegistryEntry]:
    stmt = select(ServiceRegistryEntry)
    if account_id:
        stmt = stmt.join(Location, Location.id == ServiceRegistryEntry.location_id).where(
            Location.account_id == account_id
        )
    if location_id:
        stmt = stmt.where(ServiceRegistryEntry.location_id == location_id)
    stmt = stmt.order_by(ServiceRegistryEntry.service_kind.asc(), ServiceRegistryEntry.instance_id.asc())
    result = await session.execute(stmt)
    return list(result.scalars().all())


async def mark_stale_offline(session: AsyncSession, *, cutoff: datetime, now: datetime) -> int:
    # Rows already offline are left alone so repeated sweeps report zero transitions.
    stmt = (
        update(ServiceRegistryEntry)
        .where(
            ServiceRegistryEntry.status != ServiceStatus.OFFLINE.value,
            (ServiceRegistryEntry.last_heartbeat.is_(None)) | (ServiceRegistryEntry.last_heartbeat < cutoff),
        )
        .values(status=ServiceStatus.OFFLINE.value, updated_at=now)
        .execution_options(synchronize_session=False)
    )
    result = await session.execute(stmt)
    await session.commit()
    return int(result.rowcount or 0)


async def delete_entry(
    session: AsyncSession,
    *,
    service_kind: str,
    location_id: str,
    instance_id: str,
) -> bool:
    result = await session.execute(
        delete(ServiceRegistryEntry).where(
            ServiceRegistryEntry.service_kind == service_kind,
            ServiceRegistryEntry.location_id == location_id,
            ServiceRegistryEntry.instance_id == instance_id,
        )
    )
    await session.commit()
    return bool(result.rowcount)
