from __future__ import annotations

from datetime import datetime

from fastapi import APIRouter, Depends, HTTPException, Query, Request
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from signplane.apps.api.deps import Principal, get_db, require_role
from signplane.apps.api.openapi import DEFAULT_ERROR_RESPONSES
from signplane.apps.api.response import SuccessEnvelope, success_response
from signplane.apps.api.schemas import EnforcementLogResponse, EnforcementLogsPage
from signplane.core.timeutil import isoformat
from signplane.domain.enums import EnforcementResult
from signplane.domain.models import EnforcementLogEntry
from signplane.persistence.repos import enforcement_log as enforcement_log_repo


router = APIRouter(prefix="/enforcement", tags=["enforcement"], responses=DEFAULT_ERROR_RESPONSES)


def _to_response(entry: EnforcementLogEntry) -> EnforcementLogResponse:
    return EnforcementLogResponse(
        id=entry.id,
        occurred_at=isoformat(entry.occurred_at),
        account_id=entry.account_id,
        location_id=entry.location_id,
        action=entry.action,
        billing_status=entry.billing_status,
        result=entry.result,
        code=entry.code,
        reason=entry.reason,
        device_count=entry.device_count,
        device_limit=entry.device_limit,
        request_id=entry.request_id,
    )


@router.get("/logs", response_model=SuccessEnvelope[EnforcementLogsPage] | EnforcementLogsPage)
async def list_enforcement_logs(
    request: Request,
    location_id: str | None = None,
    result: EnforcementResult | None = None,
    action: str | None = None,
    occurred_from: datetime | None = Query(default=None, alias="from"),
    occurred_to: datetime | None = Query(default=None, alias="to"),
    offset: int = Query(default=0, ge=0),
    limit: int = Query(default=50, ge=1, le=200),
    principal: Principal = Depends(require_role()),
    db: AsyncSession = Depends(get_db),
) -> dict:
    try:
        entries = await enforcement_log_repo.list_entries(
            db,
            account_id=principal.account_id,
            location_id=location_id,
            result=result.value if result else None,
            action=action,
            occurred_from=occurred_from,
            occurred_to=occurred_to,
            offset=offset,
            limit=limit + 1,
        )
    except SQLAlchemyError as exc:
        raise HTTPException(status_code=500, detail="Database error while fetching enforcement logs") from exc

    next_offset = None
    if len(entries) > limit:
        entries = entries[:limit]
        next_offset = offset + limit
    page = EnforcementLogsPage(items=[_to_response(entry) for entry in entries], next_offset=next_offset)
    return success_response(request=request, data=page)
