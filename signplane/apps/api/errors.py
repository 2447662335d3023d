from __future__ import annotations

import logging
from typing import Any

from fastapi import HTTPException, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from signplane.apps.api.response import error_response, is_versioned_request
from signplane.core.errors import (
    AccountNotFoundError,
    BillingConfigError,
    ConfigScopeError,
    DeviceNotFoundError,
    DeviceStateError,
    EnforcementUnavailableError,
    LocationNotFoundError,
    RolloutNotFoundError,
    RolloutStateError,
    RolloutValidationError,
    SignplaneError,
    TokenError,
    WebhookSignatureError,
)


logger = logging.getLogger(__name__)

_DEFAULT_ERROR_CODES: dict[int, str] = {
    400: "BAD_REQUEST",
    401: "AUTH_UNAUTHORIZED",
    403: "AUTH_FORBIDDEN",
    404: "NOT_FOUND",
    409: "CONFLICT",
    422: "VALIDATION_ERROR",
    500: "INTERNAL_ERROR",
    503: "SERVICE_UNAVAILABLE",
}

# Domain errors raised by services map onto a status and a stable code.
_DOMAIN_ERRORS: tuple[tuple[type[SignplaneError], int, str], ...] = (
    (AccountNotFoundError, 404, "ACCOUNT_NOT_FOUND"),
    (LocationNotFoundError, 404, "LOCATION_NOT_FOUND"),
    (DeviceNotFoundError, 404, "DEVICE_NOT_FOUND"),
    (DeviceStateError, 409, "DEVICE_ALREADY_PAIRED"),
    (RolloutNotFoundError, 404, "ROLLOUT_NOT_FOUND"),
    (RolloutStateError, 409, "ROLLOUT_INVALID_STATE"),
    (RolloutValidationError, 400, "ROLLOUT_INVALID"),
    (ConfigScopeError, 400, "CONFIG_SCOPE_INVALID"),
    (WebhookSignatureError, 400, "WEBHOOK_SIGNATURE_INVALID"),
    (BillingConfigError, 500, "BILLING_NOT_CONFIGURED"),
    (TokenError, 401, "AUTH_UNAUTHORIZED"),
    (EnforcementUnavailableError, 503, "ENFORCEMENT_UNAVAILABLE"),
)


def _default_code(status_code: int) -> str:
    return _DEFAULT_ERROR_CODES.get(status_code, "UNKNOWN_ERROR")


def _split_detail(detail: Any, status_code: int) -> tuple[str, str, dict[str, Any] | None]:
    # Extra keys of a dict detail travel in error.details.
    if isinstance(detail, dict):
        code = str(detail.get("code") or _default_code(status_code))
        message = str(detail.get("message") or "Request failed")
        details = {k: v for k, v in detail.items() if k not in {"code", "message"}}
        return code, message, details or None
    if isinstance(detail, str):
        return _default_code(status_code), detail, None
    return _default_code(status_code), "Request failed", None


def domain_error_status(exc: SignplaneError) -> tuple[int, str]:
    for error_type, status_code, code in _DOMAIN_ERRORS:
        if isinstance(exc, error_type):
            return status_code, code
    return 400, "BAD_REQUEST"


async def http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:
    if not is_versioned_request(request):
        return JSONResponse(content={"detail": exc.detail}, status_code=exc.status_code, headers=exc.headers)
    code, message, details = _split_detail(exc.detail, exc.status_code)
    payload = error_response(request=request, code=code, message=message, details=details)
    return JSONResponse(content=payload, status_code=exc.status_code, headers=exc.headers)


async def starlette_http_exception_handler(
    request: Request, exc: StarletteHTTPException
) -> JSONResponse:
    if not is_versioned_request(request):
        return JSONResponse(content={"detail": exc.detail}, status_code=exc.status_code, headers=exc.headers)
    code, message, details = _split_detail(exc.detail, exc.status_code)
    payload = error_response(request=request, code=code, message=message, details=details)
    return JSONResponse(content=payload, status_code=exc.status_code, headers=exc.headers)


async def validation_exception_handler(
    request: Request, exc: RequestValidationError
) -> JSONResponse:
    errors = jsonable_encoder(exc.errors())
    if not is_versioned_request(request):
        return JSONResponse(content={"detail": errors}, status_code=422)
    payload = error_response(
        request=request,
        code="REQUEST_VALIDATION_ERROR",
        message="Validation error",
        details={"errors": errors},
    )
    return JSONResponse(content=payload, status_code=422)


async def domain_exception_handler(request: Request, exc: SignplaneError) -> JSONResponse:
    # Services raise domain errors; the HTTP layer owns their status codes.
    status_code, code = domain_error_status(exc)
    if status_code >= 500:
        logger.warning("domain_error code=%s path=%s message=%s", code, request.url.path, exc)
    if not is_versioned_request(request):
        return JSONResponse(content={"detail": {"code": code, "message": str(exc)}}, status_code=status_code)
    payload = error_response(request=request, code=code, message=str(exc))
    return JSONResponse(content=payload, status_code=status_code)


async def unhandled_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    # No stack traces leave the process.
    logger.error("unhandled_exception path=%s", request.url.path, exc_info=exc)
    if not is_versioned_request(request):
        return JSONResponse(content={"detail": "Internal Server Error"}, status_code=500)
    payload = error_response(
        request=request,
        code="INTERNAL_ERROR",
        message="Internal server error",
    )
    return JSONResponse(content=payload, status_code=500)
