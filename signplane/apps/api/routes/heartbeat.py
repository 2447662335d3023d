from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException, Request
from sqlalchemy.ext.asyncio import AsyncSession

from signplane.apps.api.deps import get_db, require_service_key
from signplane.apps.api.openapi import DEFAULT_ERROR_RESPONSES
from signplane.apps.api.response import SuccessEnvelope, success_response
from signplane.apps.api.schemas import HeartbeatRequest, HeartbeatResponse
from signplane.domain.enums import ServiceKind
from signplane.services import registry as registry_service


router = APIRouter(tags=["registry"], responses=DEFAULT_ERROR_RESPONSES)

_VALID_SERVICES = ", ".join(item.value for item in ServiceKind)


@router.post("/heartbeat", response_model=SuccessEnvelope[HeartbeatResponse] | HeartbeatResponse)
async def post_heartbeat(
    request: Request,
    payload: HeartbeatRequest,
    _service_key: str = Depends(require_service_key),
    db: AsyncSession = Depends(get_db),
) -> dict:
    try:
        kind = ServiceKind(payload.service)
    except ValueError as exc:
        raise HTTPException(
            status_code=400,
            detail={"code": "INVALID_SERVICE", "message": f"Invalid service. Must be one of: {_VALID_SERVICES}"},
        ) from exc
    timestamp = await registry_service.record_heartbeat(
        db,
        service_kind=kind,
        location_id=payload.location_id,
        instance_id=payload.instance_id,
        status=payload.status,
        version=payload.version,
        base_url=payload.base_url,
        metadata=payload.metadata,
    )
    return success_response(request=request, data=HeartbeatResponse(success=True, timestamp=timestamp.isoformat()))
