from __future__ import annotations

import json
import logging
import time
from uuid import uuid4

from fastapi import FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.openapi.docs import get_swagger_ui_html
from fastapi.openapi.utils import get_openapi
from fastapi.responses import HTMLResponse, JSONResponse, RedirectResponse
from starlette.exceptions import HTTPException as StarletteHTTPException
from starlette.responses import StreamingResponse

from signplane.apps.api.errors import (
    domain_exception_handler,
    http_exception_handler,
    starlette_http_exception_handler,
    unhandled_exception_handler,
    validation_exception_handler,
)
from signplane.apps.api.response import API_VERSION, is_versioned_request
from signplane.apps.api.routes.audit import router as audit_router
from signplane.apps.api.routes.billing import router as billing_router
from signplane.apps.api.routes.config import router as config_router
from signplane.apps.api.routes.devices import router as devices_router
from signplane.apps.api.routes.enforcement import router as enforcement_router
from signplane.apps.api.routes.events import router as events_router
from signplane.apps.api.routes.health import router as health_router
from signplane.apps.api.routes.heartbeat import router as heartbeat_router
from signplane.apps.api.routes.locations import router as locations_router
from signplane.apps.api.routes.rollout_executions import router as rollout_executions_router
from signplane.apps.api.routes.rollouts import router as rollouts_router
from signplane.apps.api.routes.services import router as services_router
from signplane.core.config import get_settings
from signplane.core.errors import SignplaneError
from signplane.core.logging import configure_logging


logger = logging.getLogger(__name__)

_ENVELOPE_EXEMPT_PREFIXES = (
    "/v1/openapi.json",
    "/v1/docs",
    "/v1/redoc",
)
_PUBLIC_PATHS = {
    "/v1/health",
    "/v1/health/ready",
    "/v1/devices/register",
    "/v1/devices/{device_id}/heartbeat",
    "/v1/billing/webhook",
}
# Operations authenticated by the shared service key rather than a session.
_SERVICE_KEY_OPERATIONS = {
    ("/v1/heartbeat", "post"),
    ("/v1/events", "post"),
    ("/v1/config/location/{location_id}", "get"),
    ("/v1/config/screens/{location_id}", "get"),
    ("/v1/config/features/{location_id}", "get"),
    ("/v1/rollout_executions/{rollout_id}/{location_id}", "post"),
}


def create_app() -> FastAPI:
    configure_logging()
    settings = get_settings()
    app = FastAPI(title="Signplane Control Plane API")

    @app.middleware("http")
    async def request_context_middleware(request: Request, call_next):  # type: ignore[override]
        request_id = request.headers.get("X-Request-Id") or str(uuid4())
        request.state.request_id = request_id
        start = time.monotonic()
        response = await call_next(request)
        latency_ms = (time.monotonic() - start) * 1000.0
        logger.debug(
            "request_completed method=%s path=%s status=%s latency_ms=%.1f request_id=%s",
            request.method,
            request.url.path,
            response.status_code,
            latency_ms,
            request_id,
        )
        # Wrap versioned JSON responses in the standardized success envelope.
        if (
            is_versioned_request(request)
            and not request.url.path.startswith(_ENVELOPE_EXEMPT_PREFIXES)
            and response.status_code < 400
            and response.media_type == "application/json"
            and not isinstance(response, StreamingResponse)
        ):
            raw_body = getattr(response, "body", None)
            if raw_body:
                try:
                    payload = json.loads(raw_body)
                except (TypeError, ValueError):
                    payload = None
                if payload is not None:
                    is_enveloped = (
                        isinstance(payload, dict)
                        and "data" in payload
                        and "meta" in payload
                        and isinstance(payload.get("meta"), dict)
                        and payload["meta"].get("api_version") == API_VERSION
                    )
                    if not is_enveloped:
                        wrapped = {
                            "data": payload,
                            "meta": {"request_id": request_id, "api_version": API_VERSION},
                        }
                        wrapped_response = JSONResponse(
                            content=wrapped,
                            status_code=response.status_code,
                        )
                        for key, value in response.headers.items():
                            if key.lower() in {"content-length", "content-type"}:
                                continue
                            wrapped_response.headers[key] = value
                        response = wrapped_response

        response.headers.setdefault("X-Request-Id", request_id)
        return response

    @app.exception_handler(StarletteHTTPException)
    async def _starlette_http_exception_handler(request: Request, exc: StarletteHTTPException):
        return await starlette_http_exception_handler(request, exc)

    @app.exception_handler(Exception)
    async def _unhandled_exception_handler(request: Request, exc: Exception):
        return await unhandled_exception_handler(request, exc)

    @app.exception_handler(RequestValidationError)
    async def _validation_exception_handler(request: Request, exc: RequestValidationError):
        return await validation_exception_handler(request, exc)

    @app.exception_handler(HTTPException)
    async def _http_exception_handler(request: Request, exc: HTTPException):
        return await http_exception_handler(request, exc)

    @app.exception_handler(SignplaneError)
    async def _domain_exception_handler(request: Request, exc: SignplaneError):
        return await domain_exception_handler(request, exc)

    # Mount versioned v1 API routes.
    app.include_router(health_router, prefix=f"/{API_VERSION}")
    # Downstream services: heartbeats, event mirror, config reads, execution reports.
    app.include_router(heartbeat_router, prefix=f"/{API_VERSION}")
    app.include_router(events_router, prefix=f"/{API_VERSION}")
    app.include_router(config_router, prefix=f"/{API_VERSION}")
    app.include_router(rollout_executions_router, prefix=f"/{API_VERSION}")
    # Device provisioning; pairing is the only path through the enforcement gate.
    app.include_router(devices_router, prefix=f"/{API_VERSION}")
    # Admin surfaces scoped to the session's account.
    app.include_router(locations_router, prefix=f"/{API_VERSION}")
    app.include_router(services_router, prefix=f"/{API_VERSION}")
    app.include_router(rollouts_router, prefix=f"/{API_VERSION}")
    app.include_router(enforcement_router, prefix=f"/{API_VERSION}")
    app.include_router(audit_router, prefix=f"/{API_VERSION}")
    app.include_router(billing_router, prefix=f"/{API_VERSION}")

    @app.get("/v1/openapi.json", include_in_schema=False)
    async def openapi_json() -> JSONResponse:
        return JSONResponse(app.openapi())

    @app.get("/v1/docs", include_in_schema=False)
    async def v1_docs() -> HTMLResponse:
        return get_swagger_ui_html(openapi_url="/v1/openapi.json", title="Signplane API v1")

    @app.get("/docs", include_in_schema=False)
    async def docs_redirect() -> RedirectResponse:
        return RedirectResponse(url="/v1/docs")

    def custom_openapi() -> dict:
        # Bearer sessions for admin routes, the service key header for downstream services.
        if app.openapi_schema:
            return app.openapi_schema
        schema = get_openapi(
            title="Signplane Control Plane API",
            version=API_VERSION,
            routes=app.routes,
        )
        components = schema.setdefault("components", {})
        security_schemes = components.setdefault("securitySchemes", {})
        security_schemes["BearerAuth"] = {"type": "http", "scheme": "bearer"}
        security_schemes["ServiceKey"] = {"type": "apiKey", "in": "header", "name": settings.service_key_header}
        for path, operations in schema.get("paths", {}).items():
            if path in _PUBLIC_PATHS:
                continue
            for method, operation in operations.items():
                scheme = "ServiceKey" if (path, method) in _SERVICE_KEY_OPERATIONS else "BearerAuth"
                operation.setdefault("security", [{scheme: []}])
        app.openapi_schema = schema
        return app.openapi_schema

    app.openapi = custom_openapi

    return app


app = create_app()
