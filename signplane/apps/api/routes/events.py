from __future__ import annotations

from datetime import datetime
from typing import Any

from fastapi import APIRouter, Body, Depends, HTTPException, Query, Request, status
from sqlalchemy.ext.asyncio import AsyncSession

from signplane.apps.api.deps import Principal, get_db, require_role, require_service_key
from signplane.apps.api.openapi import DEFAULT_ERROR_RESPONSES
from signplane.apps.api.response import SuccessEnvelope, success_response
from signplane.apps.api.schemas import EventIngestResponse, EventsPage, EventSummaryResponse
from signplane.services import events as event_service


router = APIRouter(prefix="/events", tags=["events"], responses=DEFAULT_ERROR_RESPONSES)


@router.post(
    "",
    status_code=status.HTTP_201_CREATED,
    response_model=SuccessEnvelope[EventIngestResponse] | EventIngestResponse,
)
async def ingest_events(
    request: Request,
    body: Any = Body(...),
    _service_key: str = Depends(require_service_key),
    db: AsyncSession = Depends(get_db),
) -> dict:
    # A single object or an array; invalid items are reported without rejecting the batch.
    items = body if isinstance(body, list) else [body]
    batch = event_service.validate_event_batch(items)
    if not batch.valid:
        raise HTTPException(
            status_code=400,
            detail={"code": "NO_VALID_EVENTS", "message": "No valid events to insert", "errors": batch.errors},
        )
    rows = await event_service.log_events(db, batch.valid)
    return success_response(request=request, data=EventIngestResponse(inserted=len(rows), errors=batch.errors))


@router.get("", response_model=SuccessEnvelope[EventsPage] | EventsPage)
async def list_events(
    request: Request,
    event_type: str | None = None,
    source_service: str | None = None,
    location_id: str | None = None,
    start_time: datetime | None = None,
    end_time: datetime | None = None,
    limit: int = Query(default=100, ge=1, le=500),
    offset: int = Query(default=0, ge=0),
    principal: Principal = Depends(require_role()),
    db: AsyncSession = Depends(get_db),
) -> dict:
    page = await event_service.query_events(
        db,
        account_id=principal.account_id,
        event_type=event_type,
        source_service=source_service,
        location_id=location_id,
        start_time=start_time,
        end_time=end_time,
        limit=limit,
        offset=offset,
    )
    data = {
        "items": [event_service.serialize_event(item) for item in page.events],
        "total": page.total,
        "limit": page.limit,
        "offset": page.offset,
    }
    return success_response(request=request, data=data)


@router.get("/summary", response_model=SuccessEnvelope[EventSummaryResponse] | EventSummaryResponse)
async def events_summary(
    request: Request,
    location_id: str | None = None,
    hours: int = Query(default=24, ge=1, le=24 * 30),
    principal: Principal = Depends(require_role()),
    db: AsyncSession = Depends(get_db),
) -> dict:
    summary = await event_service.event_summary(
        db,
        account_id=principal.account_id,
        location_id=location_id,
        hours=hours,
    )
    return success_response(request=request, data=summary)
