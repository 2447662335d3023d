from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Depends, Query, Request, status
from sqlalchemy.ext.asyncio import AsyncSession

from signplane.apps.api.deps import Principal, get_db, require_account_scope, require_role
from signplane.apps.api.openapi import DEFAULT_ERROR_RESPONSES
from signplane.apps.api.response import SuccessEnvelope, success_response
from signplane.apps.api.schemas import RolloutCreateRequest, RolloutResponse, RolloutsPage
from signplane.domain.enums import RolloutStatus
from signplane.services import rollouts as rollout_service
from signplane.services.audit import audit_action


router = APIRouter(prefix="/rollouts", tags=["rollouts"], responses=DEFAULT_ERROR_RESPONSES)

RolloutEnvelope = SuccessEnvelope[RolloutResponse] | RolloutResponse


async def _audit(
    request: Request,
    principal: Principal,
    *,
    event_type: str,
    rollout_id: str,
    metadata: dict[str, Any] | None = None,
) -> None:
    await audit_action(
        request,
        actor=principal.audit_actor(),
        action=event_type,
        resource=("rollout", rollout_id),
        metadata=metadata,
    )


@router.post("", status_code=status.HTTP_201_CREATED, response_model=RolloutEnvelope)
async def create_rollout(
    request: Request,
    payload: RolloutCreateRequest,
    principal: Principal = Depends(require_role()),
    db: AsyncSession = Depends(get_db),
) -> dict:
    account_id = require_account_scope(principal, payload.account_id)
    rollout = await rollout_service.create_rollout(
        db,
        name=payload.name,
        account_id=account_id,
        rollout_type=payload.rollout_type,
        target_locations=payload.target_locations,
        payload=payload.payload,
        scheduled_at=payload.scheduled_at,
        created_by=principal.subject_id,
    )
    rollout_id = rollout.id
    _, executions = await rollout_service.get_rollout(db, rollout_id)
    body = rollout_service.serialize_rollout(rollout, executions)
    await _audit(
        request,
        principal,
        event_type="rollout.created",
        rollout_id=rollout_id,
        metadata={"targets": len(body["target_locations"])},
    )
    return success_response(request=request, data=body)


@router.get("", response_model=SuccessEnvelope[RolloutsPage] | RolloutsPage)
async def list_rollouts(
    request: Request,
    status_filter: RolloutStatus | None = Query(default=None, alias="status"),
    limit: int = Query(default=50, ge=1, le=200),
    offset: int = Query(default=0, ge=0),
    principal: Principal = Depends(require_role()),
    db: AsyncSession = Depends(get_db),
) -> dict:
    page = await rollout_service.list_rollouts(
        db,
        account_id=principal.account_id,
        status=status_filter,
        limit=limit,
        offset=offset,
    )
    data = {
        "items": [rollout_service.serialize_rollout(item) for item in page.rollouts],
        "total": page.total,
        "limit": page.limit,
        "offset": page.offset,
    }
    return success_response(request=request, data=data)


@router.get("/{rollout_id}", response_model=RolloutEnvelope)
async def get_rollout(
    request: Request,
    rollout_id: str,
    principal: Principal = Depends(require_role()),
    db: AsyncSession = Depends(get_db),
) -> dict:
    rollout, executions = await rollout_service.get_rollout(db, rollout_id, account_id=principal.account_id)
    return success_response(request=request, data=rollout_service.serialize_rollout(rollout, executions))


@router.post("/{rollout_id}/start", response_model=RolloutEnvelope)
async def start_rollout(
    request: Request,
    rollout_id: str,
    principal: Principal = Depends(require_role()),
    db: AsyncSession = Depends(get_db),
) -> dict:
    rollout = await rollout_service.start_rollout(db, rollout_id, account_id=principal.account_id)
    body = rollout_service.serialize_rollout(rollout)
    await _audit(request, principal, event_type="rollout.started", rollout_id=rollout_id)
    return success_response(request=request, data=body)


@router.post("/{rollout_id}/cancel", response_model=RolloutEnvelope)
async def cancel_rollout(
    request: Request,
    rollout_id: str,
    principal: Principal = Depends(require_role()),
    db: AsyncSession = Depends(get_db),
) -> dict:
    rollout = await rollout_service.cancel_rollout(db, rollout_id, account_id=principal.account_id)
    body = rollout_service.serialize_rollout(rollout)
    await _audit(request, principal, event_type="rollout.cancelled", rollout_id=rollout_id)
    return success_response(request=request, data=body)


@router.post("/{rollout_id}/rollback", status_code=status.HTTP_201_CREATED, response_model=RolloutEnvelope)
async def rollback_rollout(
    request: Request,
    rollout_id: str,
    principal: Principal = Depends(require_role()),
    db: AsyncSession = Depends(get_db),
) -> dict:
    # Responds with the new inverse rollout; the original is now rolled_back.
    inverse = await rollout_service.rollback_rollout(
        db,
        rollout_id,
        created_by=principal.subject_id,
        account_id=principal.account_id,
    )
    inverse_id = inverse.id
    _, executions = await rollout_service.get_rollout(db, inverse_id)
    body = rollout_service.serialize_rollout(inverse, executions)
    await _audit(
        request,
        principal,
        event_type="rollout.rolled_back",
        rollout_id=rollout_id,
        metadata={"inverse_rollout_id": inverse_id},
    )
    return success_response(request=request, data=body)
