from __future__ import annotations

from dataclasses import dataclass
from typing import Any

from starlette.requests import Request

from signplane.core.config import get_settings
from signplane.core.timeutil import utc_now
from signplane.domain.models import AuditEvent
from signplane.persistence.db import SessionLocal
from signplane.services.resilience import best_effort

# Credentials that reach audit metadata: dashboard sessions, device tokens, pairing codes,
# the shared service key and payment webhook material.
_REDACTED_KEY_FRAGMENTS = (
    "authorization",
    "device_token",
    "pairing_code",
    "service_key",
    "secret",
    "signature",
    "password",
    "token",
)
_REDACTED = "[REDACTED]"


@dataclass(frozen=True)
class AuditActor:
    """Who performed an audited control-plane action.

    ``actor_type`` is one of ``user`` (dashboard session), ``system`` (payment
    provider, workers) or ``anonymous`` (rejected credentials).
    """

    actor_type: str
    actor_id: str | None = None
    role: str | None = None
    account_id: str | None = None


ANONYMOUS = AuditActor(actor_type="anonymous")
PAYMENT_PROVIDER = AuditActor(actor_type="system", actor_id="payment_provider")


def _is_credential_key(key: Any) -> bool:
    # Header names arrive hyphenated (X-Service-Key); fragments are snake_case.
    normalized = str(key).lower().replace("-", "_")
    return any(part in normalized for part in _REDACTED_KEY_FRAGMENTS)


def redact(value: Any) -> Any:
    if isinstance(value, dict):
        return {
            str(key): _REDACTED if _is_credential_key(key) else redact(item)
            for key, item in value.items()
        }
    if isinstance(value, (list, tuple)):
        return [redact(item) for item in value]
    return value


def request_origin(request: Request | None) -> dict[str, str | None]:
    # The middleware stores the request id on state; inbound X-Request-Id is the fallback.
    if request is None:
        return {"request_id": None, "ip_address": None, "user_agent": None}
    return {
        "request_id": getattr(request.state, "request_id", None) or request.headers.get("X-Request-Id"),
        "ip_address": request.client.host if request.client else None,
        "user_agent": request.headers.get("user-agent"),
    }


async def _write(event: AuditEvent) -> AuditEvent:
    async with SessionLocal() as audit_session:
        audit_session.add(event)
        await audit_session.commit()
    return event


async def audit_action(
    request: Request | None,
    *,
    actor: AuditActor,
    action: str,
    outcome: str = "success",
    resource: tuple[str, str | None] | None = None,
    account_id: str | None = None,
    metadata: dict[str, Any] | None = None,
    error_code: str | None = None,
) -> AuditEvent | None:
    """Append one audit row in its own session, bounded by the audit write timeout.

    Returns ``None`` when the write fails or times out; the audited action
    already happened and is never undone by a lost audit row.
    """
    resource_type, resource_id = resource if resource else (None, None)
    event = AuditEvent(
        occurred_at=utc_now(),
        account_id=account_id or actor.account_id,
        actor_type=actor.actor_type,
        actor_id=actor.actor_id,
        actor_role=actor.role,
        event_type=action,
        outcome=outcome,
        resource_type=resource_type,
        resource_id=resource_id,
        metadata_json=redact(metadata or {}),
        error_code=error_code,
        **request_origin(request),
    )
    written = await best_effort(
        lambda: _write(event),
        operation=f"audit_write:{action}",
        timeout_ms=get_settings().audit_write_timeout_ms,
    )
    return written.value if written.ok else None
