from __future__ import annotations

from typing import Any

from pydantic import BaseModel

from signplane.apps.api.response import ErrorEnvelope, PairingRejectionEnvelope


def _error_example(*, code: str, message: str, details: dict[str, Any] | None = None) -> dict[str, Any]:
    payload: dict[str, Any] = {
        "error": {"code": code, "message": message},
        "meta": {"request_id": "req_example", "api_version": "v1"},
    }
    if details:
        payload["error"]["details"] = details
    return payload


def _response(
    description: str, example: dict[str, Any], model: type[BaseModel] = ErrorEnvelope
) -> dict[str, Any]:
    return {
        "model": model,
        "description": description,
        "content": {"application/json": {"example": example}},
    }


DEFAULT_ERROR_RESPONSES: dict[int, dict[str, Any]] = {
    400: _response("Bad request", _error_example(code="BAD_REQUEST", message="Bad request")),
    401: _response(
        "Unauthorized",
        _error_example(code="AUTH_UNAUTHORIZED", message="Missing or invalid bearer token"),
    ),
    403: _response(
        "Forbidden",
        _error_example(code="AUTH_FORBIDDEN", message="Insufficient role for this operation"),
    ),
    404: _response("Not found", _error_example(code="NOT_FOUND", message="Resource not found")),
    409: _response(
        "Conflict",
        _error_example(
            code="ROLLOUT_INVALID_STATE",
            message="Rollout cannot be started from status 'completed'",
        ),
    ),
    422: _response(
        "Validation error",
        _error_example(code="REQUEST_VALIDATION_ERROR", message="Validation error"),
    ),
    500: _response("Internal server error", _error_example(code="INTERNAL_ERROR", message="Internal server error")),
    503: _response("Service unavailable", _error_example(code="SERVICE_UNAVAILABLE", message="Service unavailable")),
}

PAIRING_ERROR_RESPONSES: dict[int, dict[str, Any]] = {
    403: _response(
        "Pairing rejected by enforcement",
        _error_example(
            code="DEVICE_LIMIT_EXCEEDED",
            message="Location 'Downtown' has reached its device limit (5). Upgrade plan or add another location.",
            details={
                "success": False,
                "error": "DEVICE_LIMIT_EXCEEDED",
                "billing_status": "paid",
                "help": "Upgrade your plan at /billing to add more devices",
            },
        ),
        model=PairingRejectionEnvelope,
    ),
    503: _response(
        "Pairing state unavailable; pairing is denied",
        _error_example(code="ENFORCEMENT_UNAVAILABLE", message="Pairing is temporarily unavailable"),
    ),
}
