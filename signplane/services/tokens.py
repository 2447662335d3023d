from __future__ import annotations

from dataclasses import dataclass
from datetime import timedelta
from typing import Any

import jwt

from signplane.core.config import get_settings
from signplane.core.errors import TokenError
from signplane.core.timeutil import utc_now


_ALGORITHM = "HS256"
# Device tokens outlive any billing period; they identify hardware, not entitlement.
DEVICE_TOKEN_TTL = timedelta(days=365)


@dataclass(frozen=True)
class SessionClaims:
    subject: str
    account_id: str
    role: str


def issue_session_token(*, subject: str, account_id: str, role: str, ttl: timedelta | None = None) -> str:
    settings = get_settings()
    now = utc_now()
    claims = {
        "sub": subject,
        "account_id": account_id,
        "role": role,
        "type": "session",
        "iat": now,
        "exp": now + (ttl or timedelta(hours=settings.session_token_ttl_hours)),
    }
    return jwt.encode(claims, settings.session_token_secret, algorithm=_ALGORITHM)


def verify_session_token(token: str) -> SessionClaims:
    claims = _decode(token, get_settings().session_token_secret, expected_type="session")
    subject = claims.get("sub")
    account_id = claims.get("account_id")
    role = claims.get("role")
    if not subject or not account_id or not role:
        raise TokenError("Session token missing required claims")
    return SessionClaims(subject=str(subject), account_id=str(account_id), role=str(role))


def issue_device_token(device_id: str) -> str:
    now = utc_now()
    claims = {"device_id": device_id, "type": "device", "iat": now, "exp": now + DEVICE_TOKEN_TTL}
    return jwt.encode(claims, get_settings().device_token_secret, algorithm=_ALGORITHM)


def verify_device_token(token: str) -> str:
    claims = _decode(token, get_settings().device_token_secret, expected_type="device")
    device_id = claims.get("device_id")
    if not device_id:
        raise TokenError("Device token missing device_id")
    return str(device_id)


def _decode(token: str, secret: str, *, expected_type: str) -> dict[str, Any]:
    try:
        claims = jwt.decode(token, secret, algorithms=[_ALGORITHM])
    except jwt.PyJWTError as exc:
        raise TokenError("Invalid or expired token") from exc
    if claims.get("type") != expected_type:
        raise TokenError("Token type mismatch")
    return claims
