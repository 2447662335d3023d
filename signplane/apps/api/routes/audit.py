from __future__ import annotations

from datetime import datetime
from typing import Any

from fastapi import APIRouter, Depends, Query, Request
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession

from signplane.apps.api.deps import Principal, get_db, require_role
from signplane.apps.api.openapi import DEFAULT_ERROR_RESPONSES
from signplane.apps.api.response import SuccessEnvelope, success_response
from signplane.core.timeutil import isoformat
from signplane.domain.models import AuditEvent
from signplane.persistence.repos import audit as audit_repo


router = APIRouter(prefix="/audit", tags=["audit"], responses=DEFAULT_ERROR_RESPONSES)


class AuditEntry(BaseModel):
    id: int
    occurred_at: str | None
    actor: dict[str, str | None]
    action: str
    outcome: str
    resource: dict[str, str | None] | None
    request_id: str | None
    error_code: str | None
    metadata: dict[str, Any]


class AuditPage(BaseModel):
    items: list[AuditEntry]
    total: int
    limit: int
    offset: int


def _entry(event: AuditEvent) -> AuditEntry:
    resource = None
    if event.resource_type:
        resource = {"type": event.resource_type, "id": event.resource_id}
    return AuditEntry(
        id=event.id,
        occurred_at=isoformat(event.occurred_at),
        actor={"type": event.actor_type, "id": event.actor_id, "role": event.actor_role},
        action=event.event_type,
        outcome=event.outcome,
        resource=resource,
        request_id=event.request_id,
        error_code=event.error_code,
        metadata=event.metadata_json or {},
    )


@router.get("/events", response_model=SuccessEnvelope[AuditPage] | AuditPage)
async def list_audit_events(
    request: Request,
    action: str | None = None,
    outcome: str | None = None,
    actor_id: str | None = None,
    resource_type: str | None = None,
    resource_id: str | None = None,
    since: datetime | None = None,
    until: datetime | None = None,
    limit: int = Query(default=50, ge=1, le=200),
    offset: int = Query(default=0, ge=0),
    principal: Principal = Depends(require_role()),
    db: AsyncSession = Depends(get_db),
) -> dict:
    # Admin actions, pairing attempts and billing webhooks for the caller's account.
    filters = audit_repo.AuditFilters(
        event_type=action,
        outcome=outcome,
        actor_id=actor_id,
        resource_type=resource_type,
        resource_id=resource_id,
        since=since,
        until=until,
    )
    events, total = await audit_repo.list_account_events(
        db, principal.account_id, filters, limit=limit, offset=offset
    )
    page = AuditPage(items=[_entry(item) for item in events], total=total, limit=limit, offset=offset)
    return success_response(request=request, data=page)
