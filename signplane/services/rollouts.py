from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
import logging
from typing import Any
from uuid import uuid4

from sqlalchemy import func, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from signplane.core.errors import RolloutNotFoundError, RolloutStateError, RolloutValidationError
from signplane.core.timeutil import ensure_utc, isoformat, utc_now
from signplane.domain.enums import (
    TERMINAL_EXECUTION_STATUSES,
    ExecutionStatus,
    RolloutStatus,
    RolloutType,
)
from signplane.domain.models import Location, Rollout, RolloutExecution


logger = logging.getLogger(__name__)

_CANCELLABLE = (RolloutStatus.PENDING.value, RolloutStatus.SCHEDULED.value)
# Rollback applies to anything that has been started.
_ROLLBACKABLE = (RolloutStatus.IN_PROGRESS.value, RolloutStatus.COMPLETED.value, RolloutStatus.FAILED.value)
# Aggregation never overwrites a terminal or rolled-back rollout.
_AGGREGATABLE = (RolloutStatus.PENDING.value, RolloutStatus.SCHEDULED.value, RolloutStatus.IN_PROGRESS.value)


@dataclass(frozen=True)
class RolloutPage:
    rollouts: list[Rollout]
    total: int
    limit: int
    offset: int


def serialize_execution(execution: RolloutExecution) -> dict[str, Any]:
    return {
        "location_id": execution.location_id,
        "status": execution.status,
        "started_at": isoformat(execution.started_at),
        "completed_at": isoformat(execution.completed_at),
        "error_message": execution.error_message,
    }


def serialize_rollout(rollout: Rollout, executions: list[RolloutExecution] | None = None) -> dict[str, Any]:
    payload = {
        "id": rollout.id,
        "name": rollout.name,
        "account_id": rollout.account_id,
        "rollout_type": rollout.rollout_type,
        "target_locations": list(rollout.target_locations or []),
        "payload": rollout.payload or {},
        "status": rollout.status,
        "scheduled_at": isoformat(rollout.scheduled_at),
        "started_at": isoformat(rollout.started_at),
        "completed_at": isoformat(rollout.completed_at),
        "created_by": rollout.created_by,
        "rollback_of": rollout.rollback_of,
        "created_at": isoformat(rollout.created_at),
    }
    if executions is not None:
        payload["executions"] = [serialize_execution(item) for item in executions]
    return payload


def _dedupe(locations: list[str]) -> list[str]:
    # Targets are a set; keep first-seen order for stable responses.
    seen: dict[str, None] = {}
    for location_id in locations:
        if location_id:
            seen.setdefault(location_id, None)
    return list(seen)


async def _load_rollout(session: AsyncSession, rollout_id: str, account_id: str | None = None) -> Rollout:
    # Transitions are conditional UPDATEs; always reload so callers see the stored status.
    rollout = await session.get(Rollout, rollout_id, populate_existing=True)
    if rollout is None or (account_id is not None and rollout.account_id != account_id):
        raise RolloutNotFoundError(f"Rollout {rollout_id} not found")
    return rollout


async def list_executions(session: AsyncSession, rollout_id: str) -> list[RolloutExecution]:
    result = await session.execute(
        select(RolloutExecution)
        .where(RolloutExecution.rollout_id == rollout_id)
        .order_by(RolloutExecution.location_id.asc())
    )
    return list(result.scalars().all())


async def create_rollout(
    session: AsyncSession,
    *,
    name: str,
    account_id: str,
    rollout_type: str | RolloutType,
    target_locations: list[str],
    payload: dict[str, Any] | None = None,
    scheduled_at: datetime | None = None,
    created_by: str | None = None,
    rollback_of: str | None = None,
) -> Rollout:
    """Create a rollout and one pending execution per target location.

    The rollout row and its executions are committed together; a failure
    while writing executions leaves nothing behind. Rollouts without any
    target location are rejected because they could never complete.
    """
    kind = RolloutType(rollout_type)
    targets = _dedupe(target_locations)
    if not targets:
        raise RolloutValidationError("Rollout requires at least one target location")
    known = await session.execute(
        select(Location.id).where(Location.account_id == account_id, Location.id.in_(targets))
    )
    missing = sorted(set(targets) - set(known.scalars().all()))
    if missing:
        raise RolloutValidationError(f"Unknown target locations: {', '.join(missing)}")

    rollout = Rollout(
        id=uuid4().hex,
        name=name,
        account_id=account_id,
        rollout_type=kind.value,
        target_locations=targets,
        payload=payload or {},
        status=(RolloutStatus.SCHEDULED if scheduled_at else RolloutStatus.PENDING).value,
        scheduled_at=ensure_utc(scheduled_at),
        created_by=created_by,
        rollback_of=rollback_of,
    )
    try:
        session.add(rollout)
        await session.flush()
        session.add_all(
            [
                RolloutExecution(rollout_id=rollout.id, location_id=location_id, status=ExecutionStatus.PENDING.value)
                for location_id in targets
            ]
        )
        await session.commit()
    except SQLAlchemyError:
        await session.rollback()
        logger.error("rollout_create_failed name=%s account_id=%s", name, account_id, exc_info=True)
        raise
    logger.info(
        "rollout_created rollout_id=%s account_id=%s type=%s targets=%s status=%s",
        rollout.id,
        account_id,
        kind.value,
        len(targets),
        rollout.status,
    )
    return rollout


async def get_rollout(
    session: AsyncSession,
    rollout_id: str,
    *,
    account_id: str | None = None,
) -> tuple[Rollout, list[RolloutExecution]]:
    rollout = await _load_rollout(session, rollout_id, account_id)
    return rollout, await list_executions(session, rollout_id)


async def list_rollouts(
    session: AsyncSession,
    *,
    account_id: str,
    status: str | RolloutStatus | None = None,
    limit: int = 50,
    offset: int = 0,
) -> RolloutPage:
    filters = [Rollout.account_id == account_id]
    if status:
        filters.append(Rollout.status == RolloutStatus(status).value)
    total = await session.execute(select(func.count()).select_from(Rollout).where(*filters))
    rows = await session.execute(
        select(Rollout)
        .where(*filters)
        .order_by(Rollout.created_at.desc(), Rollout.id.desc())
        .offset(offset)
        .limit(limit)
    )
    return RolloutPage(rollouts=list(rows.scalars().all()), total=int(total.scalar_one() or 0), limit=limit, offset=offset)


async def _transition(
    session: AsyncSession,
    rollout_id: str,
    *,
    allowed_from: tuple[str, ...],
    values: dict[str, Any],
) -> int:
    # Conditional update; concurrent callers cannot both win the same transition.
    result = await session.execute(
        update(Rollout)
        .where(Rollout.id == rollout_id, Rollout.status.in_(allowed_from))
        .values(**values)
        .execution_options(synchronize_session=False)
    )
    return int(result.rowcount or 0)


async def start_rollout(session: AsyncSession, rollout_id: str, *, account_id: str | None = None) -> Rollout:
    rollout = await _load_rollout(session, rollout_id, account_id)
    current_status = rollout.status
    now = utc_now()
    changed = await _transition(
        session,
        rollout_id,
        allowed_from=(RolloutStatus.PENDING.value,),
        values={"status": RolloutStatus.IN_PROGRESS.value, "started_at": now, "updated_at": now},
    )
    if not changed:
        await session.rollback()
        raise RolloutStateError(f"Rollout {rollout_id} cannot start from status '{current_status}'")
    await session.commit()
    await session.refresh(rollout)
    logger.info("rollout_started rollout_id=%s", rollout_id)
    return rollout


async def _recompute_completion(session: AsyncSession, rollout_id: str) -> str | None:
    # Only path to a terminal rollout status; safe to run concurrently since both writers agree.
    result = await session.execute(select(RolloutExecution.status).where(RolloutExecution.rollout_id == rollout_id))
    statuses = [ExecutionStatus(value) for value in result.scalars().all()]
    if not statuses or any(status not in TERMINAL_EXECUTION_STATUSES for status in statuses):
        return None
    final = RolloutStatus.FAILED if ExecutionStatus.FAILED in statuses else RolloutStatus.COMPLETED
    now = utc_now()
    changed = await _transition(
        session,
        rollout_id,
        allowed_from=_AGGREGATABLE,
        values={"status": final.value, "completed_at": now, "updated_at": now},
    )
    if changed:
        logger.info("rollout_finished rollout_id=%s status=%s", rollout_id, final.value)
        return final.value
    return None


async def update_execution_status(
    session: AsyncSession,
    *,
    rollout_id: str,
    location_id: str,
    status: str | ExecutionStatus,
    error_message: str | None = None,
) -> RolloutExecution:
    target = ExecutionStatus(status)
    result = await session.execute(
        select(RolloutExecution).where(
            RolloutExecution.rollout_id == rollout_id,
            RolloutExecution.location_id == location_id,
        )
    )
    execution = result.scalar_one_or_none()
    if execution is None:
        raise RolloutNotFoundError(f"No execution for rollout {rollout_id} at location {location_id}")
    now = utc_now()
    execution.status = target.value
    execution.error_message = error_message
    if target == ExecutionStatus.IN_PROGRESS:
        execution.started_at = now
    elif target in TERMINAL_EXECUTION_STATUSES:
        execution.completed_at = now
    await session.flush()
    await _recompute_completion(session, rollout_id)
    await session.commit()
    logger.info(
        "rollout_execution_updated rollout_id=%s location_id=%s status=%s",
        rollout_id,
        location_id,
        target.value,
    )
    return execution


async def cancel_rollout(session: AsyncSession, rollout_id: str, *, account_id: str | None = None) -> Rollout:
    rollout = await _load_rollout(session, rollout_id, account_id)
    current_status = rollout.status
    changed = await _transition(
        session,
        rollout_id,
        allowed_from=_CANCELLABLE,
        values={"status": RolloutStatus.ROLLED_BACK.value, "updated_at": utc_now()},
    )
    if not changed:
        await session.rollback()
        raise RolloutStateError(f"Rollout {rollout_id} cannot be cancelled from status '{current_status}'")
    await session.commit()
    await session.refresh(rollout)
    logger.info("rollout_cancelled rollout_id=%s", rollout_id)
    return rollout


async def rollback_rollout(
    session: AsyncSession,
    rollout_id: str,
    *,
    created_by: str | None = None,
    account_id: str | None = None,
) -> Rollout:
    # The original keeps its executions for history; the inverse is a fresh rollout.
    original = await _load_rollout(session, rollout_id, account_id)
    current_status = original.status
    changed = await _transition(
        session,
        rollout_id,
        allowed_from=_ROLLBACKABLE,
        values={"status": RolloutStatus.ROLLED_BACK.value, "updated_at": utc_now()},
    )
    if not changed:
        await session.rollback()
        raise RolloutStateError(f"Rollout {rollout_id} cannot be rolled back from status '{current_status}'")
    inverse_payload = {**(original.payload or {}), "is_rollback": True, "original_rollout_id": original.id}
    # create_rollout commits the status change and the inverse rollout together.
    try:
        inverse = await create_rollout(
            session,
            name=f"Rollback: {original.name}",
            account_id=original.account_id,
            rollout_type=original.rollout_type,
            target_locations=list(original.target_locations or []),
            payload=inverse_payload,
            created_by=created_by,
            rollback_of=original.id,
        )
    except RolloutValidationError:
        await session.rollback()
        raise
    await session.refresh(original)
    logger.info("rollout_rolled_back rollout_id=%s inverse_id=%s", rollout_id, inverse.id)
    return inverse


async def due_scheduled_rollouts(session: AsyncSession, *, now: datetime | None = None) -> list[Rollout]:
    # Stored times are UTC; offset-aware cutoffs must be compared in UTC too.
    current = ensure_utc(now) or utc_now()
    result = await session.execute(
        select(Rollout)
        .where(Rollout.status == RolloutStatus.SCHEDULED.value, Rollout.scheduled_at <= current)
        .order_by(Rollout.scheduled_at.asc())
    )
    return list(result.scalars().all())


async def start_due_rollouts(session: AsyncSession, *, now: datetime | None = None) -> list[str]:
    # Scheduler hook: due scheduled rollouts move straight to in_progress.
    current = ensure_utc(now) or utc_now()
    started: list[str] = []
    for rollout in await due_scheduled_rollouts(session, now=current):
        changed = await _transition(
            session,
            rollout.id,
            allowed_from=(RolloutStatus.SCHEDULED.value,),
            values={"status": RolloutStatus.IN_PROGRESS.value, "started_at": current, "updated_at": current},
        )
        if changed:
            started.append(rollout.id)
    await session.commit()
    if started:
        logger.info("scheduled_rollouts_started count=%s", len(started))
    return started
