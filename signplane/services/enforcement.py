from __future__ import annotations

from dataclasses import dataclass
import logging

from signplane.core.config import get_settings
from signplane.core.timeutil import utc_now
from signplane.domain.enums import EnforcementCode, EnforcementResult
from signplane.domain.models import Account, EnforcementLogEntry, Location
from signplane.persistence.db import SessionLocal
from signplane.persistence.repos import enforcement_log as enforcement_log_repo
from signplane.services.billing import coerce_billing_status, is_billing_active
from signplane.services.resilience import BestEffortResult, best_effort


logger = logging.getLogger(__name__)

PAIR_DEVICE_ACTION = "LOCATION_PAIR_DEVICE"


@dataclass(frozen=True)
class PairingDecision:
    allowed: bool
    code: EnforcementCode | None = None
    message: str | None = None
    reason: str | None = None


def _check(
    account: Account, location: Location, current_device_count: int, account_device_count: int = 0
) -> PairingDecision:
    # Order is fixed: billing, location activation, setup fee, location device count, account device count.
    billing_status = coerce_billing_status(account.billing_status)
    if not is_billing_active(billing_status):
        return PairingDecision(
            allowed=False,
            code=EnforcementCode.BILLING_INACTIVE,
            message="Active subscription required. Please visit /billing to activate.",
            reason=f"Account billing status '{billing_status.value}' not active",
        )
    if not location.active:
        return PairingDecision(
            allowed=False,
            code=EnforcementCode.LOCATION_INACTIVE,
            message=f"Location '{location.name}' is not active.",
            reason="Location is not active",
        )
    if not location.setup_fee_paid:
        return PairingDecision(
            allowed=False,
            code=EnforcementCode.SETUP_FEE_NOT_PAID,
            message=f"Setup fee required for location '{location.name}'. Please complete payment.",
            reason="Location setup fee not paid",
        )
    if current_device_count >= location.device_limit:
        return PairingDecision(
            allowed=False,
            code=EnforcementCode.DEVICE_LIMIT_REACHED,
            message=(
                f"Location '{location.name}' has reached its device limit ({location.device_limit}). "
                "Upgrade plan or add another location."
            ),
            reason=f"Device limit reached: {current_device_count}/{location.device_limit}",
        )
    # NULL max_devices is the unlimited plan.
    if account.max_devices is not None and account_device_count >= account.max_devices:
        return PairingDecision(
            allowed=False,
            code=EnforcementCode.DEVICE_LIMIT_REACHED,
            message=(
                f"Your plan allows {account.max_devices} paired devices across all locations. "
                "Upgrade plan to add more devices."
            ),
            reason=f"Account device limit reached: {account_device_count}/{account.max_devices}",
        )
    return PairingDecision(allowed=True)


def can_pair(
    account: Account, location: Location, current_device_count: int, account_device_count: int = 0
) -> PairingDecision:
    # Pre-flight predicate for UIs; writes no enforcement log entry.
    return _check(account, location, current_device_count, account_device_count)


def remaining_slots(
    location: Location,
    current_device_count: int,
    account: Account | None = None,
    account_device_count: int = 0,
) -> int:
    slots = location.device_limit - current_device_count
    if account is not None and account.max_devices is not None:
        slots = min(slots, account.max_devices - account_device_count)
    return max(0, slots)


async def _append_log(entry: EnforcementLogEntry) -> EnforcementLogEntry:
    # Own session: a timed-out or failed log write never leaves the pairing transaction half-committed.
    async with SessionLocal() as log_session:
        return await enforcement_log_repo.append(log_session, entry)


async def evaluate_pairing(
    *,
    account: Account,
    location: Location,
    current_device_count: int,
    account_device_count: int = 0,
    request_id: str | None = None,
) -> PairingDecision:
    """Decide whether one more device may be paired at ``location``.

    Called only from the pairing path. Boot, heartbeat and maintenance code
    must never reach this function: paired devices keep operating no matter
    what billing does later.

    Every call appends exactly one enforcement log entry, allowed or blocked.
    The write is best effort; a failed write is logged and the decision
    still stands.
    """
    decision = _check(account, location, current_device_count, account_device_count)
    billing_status = coerce_billing_status(account.billing_status)
    account_id, location_id = account.id, location.id
    result = (EnforcementResult.ALLOWED if decision.allowed else EnforcementResult.BLOCKED).value
    code = decision.code.value if decision.code else None
    entry = EnforcementLogEntry(
        occurred_at=utc_now(),
        account_id=account_id,
        location_id=location_id,
        action=PAIR_DEVICE_ACTION,
        billing_status=billing_status.value,
        result=result,
        code=code,
        reason=decision.reason,
        device_count=current_device_count,
        device_limit=location.device_limit,
        request_id=request_id,
    )
    written: BestEffortResult[EnforcementLogEntry] = await best_effort(
        lambda: _append_log(entry),
        operation="enforcement_log_append",
        timeout_ms=get_settings().audit_write_timeout_ms,
    )
    log = logger.info if decision.allowed else logger.warning
    log(
        "enforcement_decision action=%s result=%s code=%s account_id=%s location_id=%s logged=%s",
        PAIR_DEVICE_ACTION,
        result,
        code,
        account_id,
        location_id,
        written.ok,
    )
    return decision
