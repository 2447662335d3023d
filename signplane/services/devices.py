from __future__ import annotations

from dataclasses import dataclass
import logging
from typing import Any
from uuid import uuid4

from sqlalchemy.ext.asyncio import AsyncSession

from signplane.core.config import get_settings
from signplane.core.errors import AccountNotFoundError, DeviceNotFoundError, DeviceStateError
from signplane.core.timeutil import isoformat, utc_now
from signplane.domain.enums import DeviceStatus, DeviceType, EnforcementCode
from signplane.domain.models import Account, Device, Location
from signplane.services.billing import billing_snapshot, coerce_billing_status
from signplane.services.enforcement import PairingDecision, can_pair, evaluate_pairing, remaining_slots
from signplane.services.events import log_internal_event
from signplane.services.locations import account_device_count, get_location, location_device_count
from signplane.services.resilience import best_effort, fail_closed
from signplane.services.tokens import issue_device_token


logger = logging.getLogger(__name__)

# Pairing callers see the device-limit code under its public name.
_LIMIT_EXCEEDED = "DEVICE_LIMIT_EXCEEDED"

_HELP = {
    EnforcementCode.BILLING_INACTIVE: "Visit /billing to activate your subscription",
    EnforcementCode.LOCATION_INACTIVE: "Reactivate this location from your account settings",
    EnforcementCode.SETUP_FEE_NOT_PAID: "Complete the location setup fee at /billing",
    EnforcementCode.DEVICE_LIMIT_REACHED: "Upgrade your plan at /billing to add more devices",
}


@dataclass(frozen=True)
class PairingState:
    account: Account
    location: Location
    device: Device
    device_count: int
    account_device_count: int = 0


@dataclass(frozen=True)
class PairingOutcome:
    success: bool
    device_id: str
    account_id: str
    billing_status: str
    device_name: str | None = None
    paired_at: str | None = None
    error: str | None = None
    message: str | None = None
    help: str | None = None

    def as_response(self) -> dict[str, Any]:
        if self.success:
            return {
                "success": True,
                "device_id": self.device_id,
                "account_id": self.account_id,
                "paired_at": self.paired_at,
                "device_name": self.device_name,
            }
        return {
            "success": False,
            "error": self.error,
            "message": self.message,
            "billing_status": self.billing_status,
            "help": self.help,
        }


def public_code(code: EnforcementCode) -> str:
    if code is EnforcementCode.DEVICE_LIMIT_REACHED:
        return _LIMIT_EXCEEDED
    return code.value


def default_device_name(device_id: str) -> str:
    return f"Device {device_id[:8]}"


async def register_device(
    session: AsyncSession,
    *,
    device_type: str | DeviceType,
    os_version: str | None = None,
    hardware_id: str | None = None,
    device_id: str | None = None,
) -> dict[str, Any]:
    # Re-registering an existing device only reissues its token; pairing state is untouched.
    kind = DeviceType(device_type)
    resolved_id = device_id or uuid4().hex
    device = await session.get(Device, resolved_id)
    if device is None:
        device = Device(
            id=resolved_id,
            device_type=kind.value,
            os_version=os_version,
            hardware_id=hardware_id,
            status=DeviceStatus.REGISTERED.value,
            registered_at=utc_now(),
        )
        session.add(device)
    else:
        device.os_version = os_version or device.os_version
        device.hardware_id = hardware_id or device.hardware_id
    await session.commit()
    logger.info("device_registered device_id=%s device_type=%s status=%s", device.id, kind.value, device.status)
    return {
        "device_id": device.id,
        "device_token": issue_device_token(device.id),
        "registered_at": isoformat(device.registered_at),
        "status": device.status,
    }


async def _load_pairing_state(
    session: AsyncSession,
    *,
    device_id: str,
    account_id: str,
    location_id: str,
) -> PairingState:
    account = await session.get(Account, account_id)
    if account is None:
        raise AccountNotFoundError(f"Account {account_id} not found")
    location = await get_location(session, location_id, account_id=account_id)
    device = await session.get(Device, device_id)
    if device is None:
        raise DeviceNotFoundError(f"Device {device_id} is not registered")
    return PairingState(
        account=account,
        location=location,
        device=device,
        device_count=await location_device_count(session, location_id),
        account_device_count=await account_device_count(session, account_id),
    )


async def load_pairing_state(
    session: AsyncSession,
    *,
    device_id: str,
    account_id: str,
    location_id: str,
) -> PairingState:
    # Storage failures here surface as EnforcementUnavailableError so callers deny.
    return await fail_closed(
        lambda: _load_pairing_state(session, device_id=device_id, account_id=account_id, location_id=location_id),
        operation="pairing_state_read",
        timeout_ms=get_settings().enforcement_timeout_ms,
    )


def _rejection(*, device_id: str, account_id: str, billing_status: str, decision: PairingDecision) -> PairingOutcome:
    code = decision.code or EnforcementCode.BILLING_INACTIVE
    return PairingOutcome(
        success=False,
        device_id=device_id,
        account_id=account_id,
        billing_status=billing_status,
        error=public_code(code),
        message=decision.message,
        help=_HELP[code],
    )


async def pair_device(
    session: AsyncSession,
    *,
    device_id: str,
    account_id: str,
    location_id: str,
    device_name: str | None = None,
    pairing_code: str | None = None,
    request_id: str | None = None,
) -> PairingOutcome:
    """Pair a registered device to a location if the enforcement gate allows it.

    This is the only caller of the enforcement gate. The device count is read
    immediately before the decision; two concurrent pairings at the same
    location can both observe the same count and both succeed.
    """
    state = await load_pairing_state(session, device_id=device_id, account_id=account_id, location_id=location_id)
    if state.device.status == DeviceStatus.PAIRED.value:
        raise DeviceStateError(f"Device {device_id} is already paired")
    billing_status = coerce_billing_status(state.account.billing_status).value

    decision = await evaluate_pairing(
        account=state.account,
        location=state.location,
        current_device_count=state.device_count,
        account_device_count=state.account_device_count,
        request_id=request_id,
    )
    if not decision.allowed:
        return _rejection(device_id=device_id, account_id=account_id, billing_status=billing_status, decision=decision)

    # pairing_code is accepted for display-side flows; codes are not verified by this service.
    now = utc_now()
    device = state.device
    device.status = DeviceStatus.PAIRED.value
    device.account_id = account_id
    device.location_id = location_id
    device.name = device_name or device.name or default_device_name(device_id)
    device.paired_at = now
    await session.commit()
    logger.info("device_paired device_id=%s account_id=%s location_id=%s", device_id, account_id, location_id)

    await log_internal_event(
        event_type="device.paired",
        location_id=location_id,
        account_id=account_id,
        resource_type="device",
        resource_id=device_id,
        payload={"device_name": device.name},
    )
    return PairingOutcome(
        success=True,
        device_id=device_id,
        account_id=account_id,
        billing_status=billing_status,
        device_name=device.name,
        paired_at=now.isoformat(),
    )


async def pairing_preflight(
    session: AsyncSession,
    *,
    account_id: str,
    location_id: str,
) -> dict[str, Any]:
    # Same checks as pairing, no enforcement log entry and no device required.
    async def _read() -> tuple[Account, Location, int, int]:
        account = await session.get(Account, account_id)
        if account is None:
            raise AccountNotFoundError(f"Account {account_id} not found")
        location = await get_location(session, location_id, account_id=account_id)
        count = await location_device_count(session, location_id)
        return account, location, count, await account_device_count(session, account_id)

    account, location, count, account_count = await fail_closed(
        _read,
        operation="pairing_preflight_read",
        timeout_ms=get_settings().enforcement_timeout_ms,
    )
    decision = can_pair(account, location, count, account_count)
    return {
        "allowed": decision.allowed,
        "code": public_code(decision.code) if decision.code else None,
        "message": decision.message,
        "help": _HELP[decision.code] if decision.code else None,
        "billing_status": coerce_billing_status(account.billing_status).value,
        "device_count": count,
        "device_limit": location.device_limit,
        "account_device_count": account_count,
        "max_devices": account.max_devices,
        "remaining_slots": remaining_slots(location, count, account, account_count),
    }


async def _touch_last_seen(session: AsyncSession, device: Device) -> None:
    device.last_seen_at = utc_now()
    await session.commit()


async def device_heartbeat_ack(
    session: AsyncSession,
    *,
    device_id: str,
    status: str | None = None,
) -> dict[str, Any]:
    """Acknowledge a device heartbeat.

    The acknowledgement is unconditional. Billing details are attached for
    display only and the command list never contains a disable or shutdown
    instruction, whatever the account's billing state.
    """
    account: Account | None = None
    device_count: int | None = None
    device = None
    lookup = await best_effort(
        lambda: session.get(Device, device_id),
        operation="device_heartbeat_lookup",
        timeout_ms=get_settings().audit_write_timeout_ms,
    )
    if lookup.ok:
        device = lookup.value
    if device is not None:
        # Read ownership first; a failed last-seen write rolls back and expires the instance.
        owner_account_id = device.account_id
        owner_location_id = device.location_id
        touched = await best_effort(
            lambda: _touch_last_seen(session, device),
            operation="device_last_seen_update",
            timeout_ms=get_settings().audit_write_timeout_ms,
        )
        if not touched.ok:
            await session.rollback()
        if owner_account_id:
            account_result = await best_effort(
                lambda: session.get(Account, owner_account_id),
                operation="device_heartbeat_billing_lookup",
                timeout_ms=get_settings().audit_write_timeout_ms,
            )
            account = account_result.value if account_result.ok else None
        if owner_location_id:
            count_result = await best_effort(
                lambda: location_device_count(session, owner_location_id),
                operation="device_heartbeat_count_lookup",
                timeout_ms=get_settings().audit_write_timeout_ms,
            )
            device_count = count_result.value if count_result.ok else None
    logger.debug("device_heartbeat device_id=%s reported_status=%s known=%s", device_id, status, device is not None)
    response: dict[str, Any] = {
        "acknowledged": True,
        "server_time": utc_now().isoformat(),
        "commands": [],
    }
    if account is not None:
        response.update(billing_snapshot(account))
        response["plan"] = account.plan
    if device_count is not None:
        response["device_count"] = device_count
    return response
