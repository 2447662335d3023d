from __future__ import annotations

from datetime import datetime

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from signplane.core.timeutil import ensure_utc
from signplane.domain.models import EnforcementLogEntry


async def append(session: AsyncSession, entry: EnforcementLogEntry) -> EnforcementLogEntry:
    # Append-only: rows are never updated after insert.
    session.add(entry)
    await session.commit()
    return entry


async def list_entries(
    session: AsyncSession,
    *,
    account_id: str,
    location_id: str | None = None,
    result: str | None = None,
    action: str | None = None,
    occurred_from: datetime | None = None,
    occurred_to: datetime | None = None,
    offset: int = 0,
    limit: int = 50,
) -> list[EnforcementLogEntry]:
    stmt = select(EnforcementLogEntry).where(EnforcementLogEntry.account_id == account_id)
    if location_id:
        stmt = stmt.where(EnforcementLogEntry.location_id == location_id)
    if result:
        stmt = stmt.where(EnforcementLogEntry.result == result)
    if action:
        stmt = stmt.where(EnforcementLogEntry.action == action)
    if occurred_from:
        stmt = stmt.where(EnforcementLogEntry.occurred_at >= ensure_utc(occurred_from))
    if occurred_to:
        stmt = stmt.where(EnforcementLogEntry.occurred_at <= ensure_utc(occurred_to))
    stmt = stmt.order_by(EnforcementLogEntry.occurred_at.desc(), EnforcementLogEntry.id.desc())
    stmt = stmt.offset(offset).limit(limit)
    rows = await session.execute(stmt)
    return list(rows.scalars().all())
