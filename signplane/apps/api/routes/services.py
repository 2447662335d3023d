from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException, Request
from sqlalchemy.ext.asyncio import AsyncSession

from signplane.apps.api.deps import Principal, get_db, require_role
from signplane.apps.api.openapi import DEFAULT_ERROR_RESPONSES
from signplane.apps.api.response import SuccessEnvelope, success_response
from signplane.apps.api.schemas import HealthSummaryResponse, ServiceEntryResponse
from signplane.services import registry as registry_service
from signplane.services.locations import get_location


router = APIRouter(prefix="/services", tags=["registry"], responses=DEFAULT_ERROR_RESPONSES)


@router.get("/health", response_model=SuccessEnvelope[HealthSummaryResponse] | HealthSummaryResponse)
async def services_health(
    request: Request,
    location_id: str | None = None,
    principal: Principal = Depends(require_role()),
    db: AsyncSession = Depends(get_db),
) -> dict:
    # Effective status is recomputed here, so stale entries count as offline before any sweep.
    if location_id:
        await get_location(db, location_id, account_id=principal.account_id)
    summary = await registry_service.get_health_summary(
        db,
        account_id=principal.account_id,
        location_id=location_id,
    )
    return success_response(request=request, data=summary.as_dict())


@router.get(
    "/locations/{location_id}",
    response_model=SuccessEnvelope[list[ServiceEntryResponse]] | list[ServiceEntryResponse],
)
async def location_services(
    request: Request,
    location_id: str,
    principal: Principal = Depends(require_role()),
    db: AsyncSession = Depends(get_db),
) -> dict:
    await get_location(db, location_id, account_id=principal.account_id)
    entries = await registry_service.list_location_services(db, location_id)
    return success_response(request=request, data=entries)


@router.delete("/{service}/{location_id}")
async def deregister(
    request: Request,
    service: str,
    location_id: str,
    instance_id: str | None = None,
    principal: Principal = Depends(require_role()),
    db: AsyncSession = Depends(get_db),
) -> dict:
    await get_location(db, location_id, account_id=principal.account_id)
    removed = await registry_service.deregister_service(
        db,
        service_kind=service,
        location_id=location_id,
        instance_id=instance_id,
    )
    if not removed:
        raise HTTPException(status_code=404, detail={"code": "SERVICE_NOT_FOUND", "message": "Service not registered"})
    return success_response(request=request, data={"removed": True})
