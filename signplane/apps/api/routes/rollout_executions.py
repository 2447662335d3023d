from __future__ import annotations

from fastapi import APIRouter, Depends, Request
from sqlalchemy.ext.asyncio import AsyncSession

from signplane.apps.api.deps import get_db, require_service_key
from signplane.apps.api.openapi import DEFAULT_ERROR_RESPONSES
from signplane.apps.api.response import success_response
from signplane.apps.api.schemas import ExecutionUpdateRequest
from signplane.services import rollouts as rollout_service


router = APIRouter(prefix="/rollout_executions", tags=["rollouts"], responses=DEFAULT_ERROR_RESPONSES)


@router.post("/{rollout_id}/{location_id}")
async def update_execution(
    request: Request,
    rollout_id: str,
    location_id: str,
    payload: ExecutionUpdateRequest,
    _service_key: str = Depends(require_service_key),
    db: AsyncSession = Depends(get_db),
) -> dict:
    # Every report re-evaluates the rollout aggregate.
    execution = await rollout_service.update_execution_status(
        db,
        rollout_id=rollout_id,
        location_id=location_id,
        status=payload.status,
        error_message=payload.error_message,
    )
    execution_body = rollout_service.serialize_execution(execution)
    rollout, _ = await rollout_service.get_rollout(db, rollout_id)
    data = {
        "rollout_id": rollout_id,
        "execution": execution_body,
        "rollout_status": rollout.status,
    }
    return success_response(request=request, data=data)
