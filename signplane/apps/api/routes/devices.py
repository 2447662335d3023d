from __future__ import annotations

import logging
from typing import Any

from fastapi import APIRouter, Body, Depends, HTTPException, Query, Request, status
from sqlalchemy.ext.asyncio import AsyncSession

from signplane.apps.api.deps import Principal, get_db, require_account_scope, require_role
from signplane.apps.api.openapi import DEFAULT_ERROR_RESPONSES, PAIRING_ERROR_RESPONSES
from signplane.apps.api.response import PairingRejection, SuccessEnvelope, success_response
from signplane.apps.api.schemas import (
    DeviceHeartbeatRequest,
    DeviceRegisterRequest,
    DeviceRegisterResponse,
    PairDeviceRequest,
    PairDeviceResponse,
    PairingPreflightResponse,
)
from signplane.services import devices as device_service
from signplane.services.audit import audit_action, request_origin


logger = logging.getLogger(__name__)

router = APIRouter(prefix="/devices", tags=["devices"], responses=DEFAULT_ERROR_RESPONSES)


@router.post(
    "/register",
    status_code=status.HTTP_201_CREATED,
    response_model=SuccessEnvelope[DeviceRegisterResponse] | DeviceRegisterResponse,
)
async def register(
    request: Request,
    payload: DeviceRegisterRequest,
    db: AsyncSession = Depends(get_db),
) -> dict:
    registration = await device_service.register_device(
        db,
        device_type=payload.device_type,
        os_version=payload.os_version,
        hardware_id=payload.hardware_id,
        device_id=payload.device_id,
    )
    return success_response(request=request, data=registration)


@router.post(
    "/pair",
    response_model=SuccessEnvelope[PairDeviceResponse] | PairDeviceResponse,
    responses={**DEFAULT_ERROR_RESPONSES, **PAIRING_ERROR_RESPONSES},
)
async def pair(
    request: Request,
    payload: PairDeviceRequest,
    principal: Principal = Depends(require_role()),
    db: AsyncSession = Depends(get_db),
) -> dict:
    account_id = require_account_scope(principal, payload.account_id)
    outcome = await device_service.pair_device(
        db,
        device_id=payload.device_id,
        account_id=account_id,
        location_id=payload.location_id,
        device_name=payload.device_name,
        pairing_code=payload.pairing_code,
        request_id=request_origin(request)["request_id"],
    )
    await audit_action(
        request,
        actor=principal.audit_actor(),
        action="device.pair",
        outcome="success" if outcome.success else "failure",
        resource=("device", payload.device_id),
        metadata={"location_id": payload.location_id},
        error_code=outcome.error,
    )
    if not outcome.success:
        # Policy rejections are always a documented code, never a generic error.
        rejection = PairingRejection.model_validate(outcome.as_response())
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=rejection.http_detail())
    return success_response(request=request, data=outcome.as_response())


@router.get(
    "/pair/preflight",
    response_model=SuccessEnvelope[PairingPreflightResponse] | PairingPreflightResponse,
)
async def pair_preflight(
    request: Request,
    location_id: str = Query(min_length=1),
    account_id: str | None = None,
    principal: Principal = Depends(require_role()),
    db: AsyncSession = Depends(get_db),
) -> dict:
    # Same checks as pairing without an enforcement log entry.
    scoped_account_id = require_account_scope(principal, account_id)
    result = await device_service.pairing_preflight(db, account_id=scoped_account_id, location_id=location_id)
    return success_response(request=request, data=result)


@router.post("/{device_id}/heartbeat", response_model=SuccessEnvelope[dict[str, Any]] | dict[str, Any])
async def device_heartbeat(
    request: Request,
    device_id: str,
    payload: DeviceHeartbeatRequest | None = Body(default=None),
    db: AsyncSession = Depends(get_db),
) -> dict:
    # Always acknowledged; billing state is attached for display only.
    ack = await device_service.device_heartbeat_ack(
        db,
        device_id=device_id,
        status=payload.status if payload else None,
    )
    return success_response(request=request, data=ack)
