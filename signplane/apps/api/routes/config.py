from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Depends, Request
from sqlalchemy.ext.asyncio import AsyncSession

from signplane.apps.api.deps import Principal, get_db, require_role, require_service_key
from signplane.apps.api.openapi import DEFAULT_ERROR_RESPONSES
from signplane.apps.api.response import SuccessEnvelope, success_response
from signplane.apps.api.schemas import FeatureFlagRequest, FeatureFlagResponse, LocationConfigUpdateRequest
from signplane.services import config_service
from signplane.services.locations import get_location


router = APIRouter(prefix="/config", tags=["config"], responses=DEFAULT_ERROR_RESPONSES)

ConfigEnvelope = SuccessEnvelope[dict[str, Any]] | dict[str, Any]


# Reads are side-effect free; consumers cache them and compare fetched_at.
@router.get("/location/{location_id}", response_model=ConfigEnvelope)
async def location_config(
    request: Request,
    location_id: str,
    _service_key: str = Depends(require_service_key),
    db: AsyncSession = Depends(get_db),
) -> dict:
    return success_response(request=request, data=await config_service.get_location_config(db, location_id))


@router.get("/screens/{location_id}", response_model=ConfigEnvelope)
async def screen_config(
    request: Request,
    location_id: str,
    _service_key: str = Depends(require_service_key),
    db: AsyncSession = Depends(get_db),
) -> dict:
    return success_response(request=request, data=await config_service.get_screen_config(db, location_id))


@router.get("/features/{location_id}", response_model=ConfigEnvelope)
async def feature_flags(
    request: Request,
    location_id: str,
    _service_key: str = Depends(require_service_key),
    db: AsyncSession = Depends(get_db),
) -> dict:
    return success_response(request=request, data=await config_service.get_feature_flags(db, location_id))


@router.put("/location/{location_id}", response_model=ConfigEnvelope)
async def update_location_config(
    request: Request,
    location_id: str,
    payload: LocationConfigUpdateRequest,
    principal: Principal = Depends(require_role()),
    db: AsyncSession = Depends(get_db),
) -> dict:
    await get_location(db, location_id, account_id=principal.account_id)
    await config_service.update_location_config(db, location_id, payload.model_dump(exclude_unset=True))
    return success_response(request=request, data=await config_service.get_location_config(db, location_id))


@router.put("/features", response_model=SuccessEnvelope[FeatureFlagResponse] | FeatureFlagResponse)
async def set_feature_flag(
    request: Request,
    payload: FeatureFlagRequest,
    principal: Principal = Depends(require_role()),
    db: AsyncSession = Depends(get_db),
) -> dict:
    # Without a location the flag applies account-wide.
    if payload.location_id:
        await get_location(db, payload.location_id, account_id=principal.account_id)
    flag = await config_service.set_feature_flag(
        db,
        flag_key=payload.flag_key,
        enabled=payload.enabled,
        account_id=None if payload.location_id else principal.account_id,
        location_id=payload.location_id,
        config=payload.config,
    )
    data = FeatureFlagResponse(
        flag_key=flag.flag_key,
        enabled=flag.enabled,
        account_id=flag.account_id,
        location_id=flag.location_id,
        config=flag.config or {},
    )
    return success_response(request=request, data=data)
