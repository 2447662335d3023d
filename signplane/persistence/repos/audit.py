from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime

from sqlalchemy import Select, func, select
from sqlalchemy.ext.asyncio import AsyncSession

from signplane.core.timeutil import ensure_utc
from signplane.domain.models import AuditEvent


@dataclass(frozen=True)
class AuditFilters:
    event_type: str | None = None
    outcome: str | None = None
    actor_id: str | None = None
    resource_type: str | None = None
    resource_id: str | None = None
    since: datetime | None = None
    until: datetime | None = None


def _scoped(stmt: Select, account_id: str, filters: AuditFilters) -> Select:
    # Every read is pinned to one account; the other predicates only narrow it.
    stmt = stmt.where(AuditEvent.account_id == account_id)
    for column, value in (
        (AuditEvent.event_type, filters.event_type),
        (AuditEvent.outcome, filters.outcome),
        (AuditEvent.actor_id, filters.actor_id),
        (AuditEvent.resource_type, filters.resource_type),
        (AuditEvent.resource_id, filters.resource_id),
    ):
        if value:
            stmt = stmt.where(column == value)
    if filters.since:
        stmt = stmt.where(AuditEvent.occurred_at >= ensure_utc(filters.since))
    if filters.until:
        stmt = stmt.where(AuditEvent.occurred_at <= ensure_utc(filters.until))
    return stmt


async def list_account_events(
    session: AsyncSession,
    account_id: str,
    filters: AuditFilters,
    *,
    limit: int,
    offset: int = 0,
) -> tuple[list[AuditEvent], int]:
    total = await session.scalar(_scoped(select(func.count(AuditEvent.id)), account_id, filters))
    rows = await session.execute(
        _scoped(select(AuditEvent), account_id, filters)
        .order_by(AuditEvent.occurred_at.desc(), AuditEvent.id.desc())
        .offset(offset)
        .limit(limit)
    )
    return list(rows.scalars().all()), int(total or 0)
