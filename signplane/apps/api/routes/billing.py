from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, Request
from sqlalchemy.ext.asyncio import AsyncSession

from signplane.apps.api.deps import get_db
from signplane.apps.api.openapi import DEFAULT_ERROR_RESPONSES
from signplane.apps.api.response import SuccessEnvelope, success_response
from signplane.apps.api.schemas import BillingWebhookResponse
from signplane.core.config import get_settings
from signplane.services import billing as billing_service
from signplane.services.audit import PAYMENT_PROVIDER, audit_action


logger = logging.getLogger(__name__)

router = APIRouter(prefix="/billing", tags=["billing"], responses=DEFAULT_ERROR_RESPONSES)


@router.post("/webhook", response_model=SuccessEnvelope[BillingWebhookResponse] | BillingWebhookResponse)
async def payment_webhook(request: Request, db: AsyncSession = Depends(get_db)) -> dict:
    # The signature covers the raw bytes, so the body is read before any JSON parsing.
    settings = get_settings()
    raw_body = await request.body()
    secret = billing_service.webhook_secret_for_mode()
    event = billing_service.verify_webhook_signature(
        raw_body,
        request.headers.get(settings.payment_signature_header),
        secret,
    )
    result = await billing_service.apply_billing_event(db, event)
    await audit_action(
        request,
        actor=PAYMENT_PROVIDER,
        action=f"billing.{result.event_type or 'unknown'}",
        outcome="success" if result.handled else "ignored",
        resource=("account", result.account_id),
        account_id=result.account_id,
        metadata={
            "provider_event_id": event.get("id"),
            "billing_status": result.billing_status,
            "activated_location_id": result.activated_location_id,
        },
    )
    data = BillingWebhookResponse(received=True, event_type=result.event_type, handled=result.handled)
    return success_response(request=request, data=data)
