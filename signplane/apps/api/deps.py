from __future__ import annotations

import hmac
import logging
from typing import AsyncGenerator

from fastapi import Depends, HTTPException, Request, status
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession

from signplane.core.config import get_settings
from signplane.core.errors import TokenError
from signplane.persistence.db import SessionLocal
from signplane.services.audit import ANONYMOUS, AuditActor, audit_action
from signplane.services.tokens import verify_session_token


logger = logging.getLogger(__name__)

ADMIN_ROLES = ("owner", "admin")


async def get_db() -> AsyncGenerator[AsyncSession, None]:
    # One AsyncSession per request; context manager ensures close on success/error.
    async with SessionLocal() as session:
        yield session


class Principal(BaseModel):
    # Authenticated dashboard user; every admin route is scoped to account_id.
    subject_id: str
    account_id: str
    role: str

    def audit_actor(self) -> AuditActor:
        return AuditActor(actor_type="user", actor_id=self.subject_id, role=self.role, account_id=self.account_id)


def _auth_error(message: str) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail={"code": "AUTH_UNAUTHORIZED", "message": message},
        headers={"WWW-Authenticate": "Bearer"},
    )


def _forbidden_error(message: str) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_403_FORBIDDEN,
        detail={"code": "AUTH_FORBIDDEN", "message": message},
    )


def _request_metadata(request: Request) -> dict[str, str]:
    return {"path": request.url.path, "method": request.method}


def _parse_bearer_token(header_value: str | None) -> str | None:
    if not header_value:
        return None
    parts = header_value.split()
    if len(parts) != 2 or parts[0].lower() != "bearer":
        raise _auth_error("Missing or invalid bearer token")
    return parts[1]


async def _record_auth_failure(request: Request, error_code: str) -> None:
    await audit_action(
        request,
        actor=ANONYMOUS,
        action="auth.access.failure",
        outcome="failure",
        resource=("auth", None),
        metadata=_request_metadata(request),
        error_code=error_code,
    )


async def get_current_principal(request: Request) -> Principal:
    try:
        token = _parse_bearer_token(request.headers.get("Authorization"))
    except HTTPException:
        await _record_auth_failure(request, "AUTH_UNAUTHORIZED")
        raise
    if not token:
        await _record_auth_failure(request, "AUTH_UNAUTHORIZED")
        raise _auth_error("Missing or invalid bearer token")
    try:
        claims = verify_session_token(token)
    except TokenError as exc:
        await _record_auth_failure(request, "AUTH_UNAUTHORIZED")
        raise _auth_error(str(exc)) from exc
    return Principal(subject_id=claims.subject, account_id=claims.account_id, role=claims.role)


def require_role(*roles: str):
    # Dependency factory to enforce RBAC at the route level.
    allowed = roles or ADMIN_ROLES

    async def _dependency(
        request: Request,
        principal: Principal = Depends(get_current_principal),
    ) -> Principal:
        if principal.role not in allowed:
            await audit_action(
                request,
                actor=principal.audit_actor(),
                action="rbac.forbidden",
                outcome="failure",
                resource=("rbac", None),
                metadata={**_request_metadata(request), "required_roles": list(allowed)},
                error_code="AUTH_FORBIDDEN",
            )
            raise _forbidden_error("Insufficient role for this operation")
        return principal

    return _dependency


def require_account_scope(principal: Principal, account_id: str | None) -> str:
    # Admins only ever act on their own account; a mismatched id is forbidden.
    if account_id and account_id != principal.account_id:
        raise _forbidden_error("Account scope does not match session")
    return principal.account_id


async def require_service_key(request: Request) -> str:
    # Shared credential for downstream execution services, never a user session.
    settings = get_settings()
    presented = request.headers.get(settings.service_key_header)
    if not presented or not hmac.compare_digest(presented.encode(), settings.service_key.encode()):
        logger.warning("service_key_rejected path=%s present=%s", request.url.path, bool(presented))
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail={"code": "SERVICE_KEY_INVALID", "message": "Missing or invalid service key"},
        )
    return presented
