from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
import hashlib
import hmac
import json
import logging
import time
from typing import Any

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from signplane.core.config import get_settings
from signplane.core.errors import BillingConfigError, WebhookSignatureError
from signplane.core.timeutil import utc_now
from signplane.domain.enums import ACTIVE_BILLING_STATUSES, BillingStatus, PlanTier
from signplane.domain.models import Account
from signplane.services.locations import activate_location


logger = logging.getLogger(__name__)

# Provider subscription states that map to something other than unpaid.
_PROVIDER_STATUS_MAP = {
    "active": BillingStatus.PAID,
    "trialing": BillingStatus.TRIALING,
    "past_due": BillingStatus.PAST_DUE,
}


@dataclass(frozen=True)
class BillingEventResult:
    event_type: str
    handled: bool
    account_id: str | None = None
    billing_status: str | None = None
    activated_location_id: str | None = None


def resolve_billing_status(provider_status: str | None) -> BillingStatus:
    # Anything unrecognized (canceled, incomplete, paused, None) resolves to unpaid.
    if not provider_status:
        return BillingStatus.UNPAID
    return _PROVIDER_STATUS_MAP.get(str(provider_status).strip().lower(), BillingStatus.UNPAID)


def is_billing_active(status: str | BillingStatus | None) -> bool:
    # Unknown stored values fail closed.
    try:
        return BillingStatus(status) in ACTIVE_BILLING_STATUSES
    except ValueError:
        return False


def coerce_billing_status(value: str | None) -> BillingStatus:
    try:
        return BillingStatus(value)
    except ValueError:
        return BillingStatus.UNPAID


def webhook_secret_for_mode(mode: str | None = None) -> str:
    # Test and live events are signed with different secrets; never fall back across modes.
    settings = get_settings()
    resolved_mode = (mode or settings.payment_mode or "test").lower()
    if resolved_mode == "live":
        secret = settings.payment_live_webhook_secret
        name = "PAYMENT_LIVE_WEBHOOK_SECRET"
    else:
        secret = settings.payment_webhook_secret
        name = "PAYMENT_WEBHOOK_SECRET"
    if not secret:
        raise BillingConfigError(f"{name} not configured")
    return secret


def build_webhook_signature(secret: str, payload: bytes, timestamp: int) -> str:
    # Signed payload is "<timestamp>.<raw body>" with HMAC SHA256.
    signed = f"{timestamp}.".encode("utf-8") + payload
    return hmac.new(secret.encode("utf-8"), signed, hashlib.sha256).hexdigest()


def _parse_signature_header(header: str) -> tuple[int, list[str]]:
    timestamp: int | None = None
    signatures: list[str] = []
    for part in header.split(","):
        key, _, value = part.strip().partition("=")
        if key == "t":
            try:
                timestamp = int(value)
            except ValueError as exc:
                raise WebhookSignatureError("Invalid signature timestamp") from exc
        elif key == "v1" and value:
            signatures.append(value)
    if timestamp is None or not signatures:
        raise WebhookSignatureError("Malformed signature header")
    return timestamp, signatures


def verify_webhook_signature(
    payload: bytes,
    header: str | None,
    secret: str,
    *,
    tolerance_s: int | None = None,
    now: float | None = None,
) -> dict[str, Any]:
    """Verify a payment provider webhook and return the decoded event.

    The header carries ``t=<unix ts>`` and one or more ``v1=<hex hmac>``
    entries. Any matching ``v1`` value within the tolerance window accepts
    the payload.
    """
    if not header:
        raise WebhookSignatureError("Missing signature")
    tolerance = get_settings().payment_webhook_tolerance_s if tolerance_s is None else tolerance_s
    timestamp, signatures = _parse_signature_header(header)
    expected = build_webhook_signature(secret, payload, timestamp)
    if not any(hmac.compare_digest(expected, candidate) for candidate in signatures):
        raise WebhookSignatureError("Invalid signature")
    current = time.time() if now is None else now
    if tolerance > 0 and abs(current - timestamp) > tolerance:
        raise WebhookSignatureError("Signature timestamp outside tolerance")
    try:
        event = json.loads(payload.decode("utf-8"))
    except (UnicodeDecodeError, json.JSONDecodeError) as exc:
        raise WebhookSignatureError("Webhook payload is not valid JSON") from exc
    if not isinstance(event, dict):
        raise WebhookSignatureError("Webhook payload must be an object")
    return event


def _object_id(value: Any) -> str | None:
    # Provider objects are either expanded dicts or bare ids.
    if isinstance(value, dict):
        return value.get("id")
    return value if isinstance(value, str) else None


def _plan_or_default(value: Any) -> str:
    try:
        return PlanTier(value).value
    except ValueError:
        return PlanTier.STARTER.value


async def _account_by_customer(session: AsyncSession, customer_id: str | None) -> Account | None:
    if not customer_id:
        return None
    result = await session.execute(select(Account).where(Account.payment_customer_id == customer_id))
    return result.scalars().first()


async def apply_billing_event(session: AsyncSession, event: dict[str, Any]) -> BillingEventResult:
    # Billing writes touch accounts (and setup-fee locations) only; devices are never modified here.
    event_type = str(event.get("type") or "")
    obj = (event.get("data") or {}).get("object") or {}
    metadata = obj.get("metadata") or {}

    if event_type == "checkout.session.completed":
        account_id = metadata.get("account_id")
        if not account_id:
            logger.error("billing_checkout_missing_account event_id=%s", event.get("id"))
            return BillingEventResult(event_type=event_type, handled=False)
        account = await session.get(Account, account_id)
        if account is None:
            logger.error("billing_checkout_unknown_account account_id=%s", account_id)
            return BillingEventResult(event_type=event_type, handled=False, account_id=account_id)
        activated_location_id = None
        if metadata.get("purpose") == "setup_fee" and metadata.get("location_id"):
            location = await activate_location(
                session, location_id=metadata["location_id"], account_id=account_id, commit=False
            )
            activated_location_id = location.id
        else:
            account.billing_status = BillingStatus.PAID.value
            account.plan = _plan_or_default(metadata.get("plan"))
        account.payment_customer_id = _object_id(obj.get("customer")) or account.payment_customer_id
        account.subscription_id = _object_id(obj.get("subscription")) or account.subscription_id
        await session.commit()
        logger.info(
            "billing_checkout_completed account_id=%s billing_status=%s location_id=%s",
            account_id,
            account.billing_status,
            activated_location_id,
        )
        return BillingEventResult(
            event_type=event_type,
            handled=True,
            account_id=account_id,
            billing_status=account.billing_status,
            activated_location_id=activated_location_id,
        )

    if event_type in ("customer.subscription.created", "customer.subscription.updated"):
        account = await _account_by_customer(session, _object_id(obj.get("customer")))
        if account is None:
            logger.warning("billing_subscription_unknown_customer event_type=%s", event_type)
            return BillingEventResult(event_type=event_type, handled=False)
        status = resolve_billing_status(obj.get("status"))
        account.subscription_id = obj.get("id") or account.subscription_id
        account.subscription_status = obj.get("status")
        account.billing_status = status.value
        account.plan = _plan_or_default(metadata.get("plan") or account.plan)
        period_end = obj.get("current_period_end")
        if isinstance(period_end, (int, float)):
            account.current_period_end = datetime.fromtimestamp(period_end, tz=timezone.utc)
        await session.commit()
        logger.info(
            "billing_subscription_changed account_id=%s provider_status=%s billing_status=%s",
            account.id,
            obj.get("status"),
            status.value,
        )
        return BillingEventResult(
            event_type=event_type, handled=True, account_id=account.id, billing_status=status.value
        )

    if event_type == "customer.subscription.deleted":
        account = await _account_by_customer(session, _object_id(obj.get("customer")))
        if account is None:
            logger.warning("billing_subscription_unknown_customer event_type=%s", event_type)
            return BillingEventResult(event_type=event_type, handled=False)
        status = resolve_billing_status("canceled")
        account.subscription_status = "canceled"
        account.billing_status = status.value
        await session.commit()
        logger.info("billing_subscription_deleted account_id=%s billing_status=%s", account.id, status.value)
        return BillingEventResult(
            event_type=event_type, handled=True, account_id=account.id, billing_status=status.value
        )

    if event_type == "invoice.payment_failed":
        account = await _account_by_customer(session, _object_id(obj.get("customer")))
        if account is None:
            return BillingEventResult(event_type=event_type, handled=False)
        account.billing_status = BillingStatus.PAST_DUE.value
        await session.commit()
        logger.warning("billing_payment_failed account_id=%s", account.id)
        return BillingEventResult(
            event_type=event_type, handled=True, account_id=account.id, billing_status=account.billing_status
        )

    logger.info("billing_event_ignored event_type=%s", event_type)
    return BillingEventResult(event_type=event_type, handled=False)


def billing_snapshot(account: Account | None) -> dict[str, Any]:
    # Informational billing view for device acknowledgements; never drives device behavior.
    status = coerce_billing_status(account.billing_status if account else None)
    return {
        "billing_status": status.value,
        "billing_active": status in ACTIVE_BILLING_STATUSES,
        "checked_at": utc_now().isoformat(),
    }
