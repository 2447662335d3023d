from __future__ import annotations

from fastapi import APIRouter, Depends, Request, status
from sqlalchemy.ext.asyncio import AsyncSession

from signplane.apps.api.deps import Principal, get_db, require_role
from signplane.apps.api.openapi import DEFAULT_ERROR_RESPONSES
from signplane.apps.api.response import SuccessEnvelope, success_response
from signplane.apps.api.schemas import LocationCreateRequest, LocationPlanRequest, LocationResponse
from signplane.domain.models import Location
from signplane.services import locations as location_service
from signplane.services.audit import audit_action


router = APIRouter(prefix="/locations", tags=["locations"], responses=DEFAULT_ERROR_RESPONSES)

LocationEnvelope = SuccessEnvelope[LocationResponse] | LocationResponse


def _to_response(location: Location, device_count: int | None = None) -> LocationResponse:
    return LocationResponse(
        id=location.id,
        account_id=location.account_id,
        name=location.name,
        address=location.address,
        timezone=location.timezone,
        plan_tier=location.plan_tier,
        device_limit=location.device_limit,
        active=location.active,
        setup_fee_paid=location.setup_fee_paid,
        device_count=device_count,
    )


async def _audit(request: Request, principal: Principal, action: str, location_id: str) -> None:
    await audit_action(request, actor=principal.audit_actor(), action=action, resource=("location", location_id))


@router.get("", response_model=SuccessEnvelope[list[LocationResponse]] | list[LocationResponse])
async def list_locations(
    request: Request,
    principal: Principal = Depends(require_role()),
    db: AsyncSession = Depends(get_db),
) -> dict:
    locations = await location_service.list_locations(db, account_id=principal.account_id)
    data = [_to_response(item, await location_service.location_device_count(db, item.id)) for item in locations]
    return success_response(request=request, data=data)


@router.post("", status_code=status.HTTP_201_CREATED, response_model=LocationEnvelope)
async def create_location(
    request: Request,
    payload: LocationCreateRequest,
    principal: Principal = Depends(require_role()),
    db: AsyncSession = Depends(get_db),
) -> dict:
    # Created inactive; the setup-fee checkout activates it.
    location = await location_service.create_location(
        db,
        account_id=principal.account_id,
        name=payload.name,
        address=payload.address,
        timezone=payload.timezone,
        plan_tier=payload.plan_tier,
    )
    body = _to_response(location, 0)
    await _audit(request, principal, "location.created", body.id)
    return success_response(request=request, data=body)


@router.get("/{location_id}", response_model=LocationEnvelope)
async def get_location(
    request: Request,
    location_id: str,
    principal: Principal = Depends(require_role()),
    db: AsyncSession = Depends(get_db),
) -> dict:
    location = await location_service.get_location(db, location_id, account_id=principal.account_id)
    body = _to_response(location, await location_service.location_device_count(db, location_id))
    return success_response(request=request, data=body)


@router.patch("/{location_id}/plan", response_model=LocationEnvelope)
async def update_plan(
    request: Request,
    location_id: str,
    payload: LocationPlanRequest,
    principal: Principal = Depends(require_role()),
    db: AsyncSession = Depends(get_db),
) -> dict:
    location = await location_service.update_location_plan(
        db,
        location_id=location_id,
        plan_tier=payload.plan_tier,
        account_id=principal.account_id,
    )
    body = _to_response(location)
    await _audit(request, principal, "location.plan_updated", location_id)
    return success_response(request=request, data=body)


@router.post("/{location_id}/deactivate", response_model=LocationEnvelope)
async def deactivate(
    request: Request,
    location_id: str,
    principal: Principal = Depends(require_role()),
    db: AsyncSession = Depends(get_db),
) -> dict:
    # Stops new pairing only; already paired devices are untouched.
    location = await location_service.deactivate_location(
        db,
        location_id=location_id,
        account_id=principal.account_id,
    )
    body = _to_response(location)
    await _audit(request, principal, "location.deactivated", location_id)
    return success_response(request=request, data=body)
