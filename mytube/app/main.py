from __future__ import annotations

import logging
from collections.abc import AsyncIterator, Awaitable, Callable
from contextlib import asynccontextmanager
from time import perf_counter
from uuid import uuid4

from fastapi import FastAPI, Request, Response
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse, RedirectResponse
from structlog.contextvars import bind_contextvars, reset_contextvars

from mytube.app.api.routes import ApiError, router
from mytube.app.dependencies import (
    get_auth_state,
    get_listing_service,
    get_settings,
    get_site_session_signer,
    get_telemetry,
)
from mytube.app.logging_config import configure_application_logging
from mytube.app.services.site_auth import SESSION_COOKIE_NAME, is_public_path
from mytube.app.telemetry import TelemetryEvent, elapsed_ms

LOGGER = logging.getLogger("mytube.http")


def health_check() -> dict[str, str]:
    return {"status": "ok"}


def login_hint() -> dict[str, str]:
    return {"login": "POST /api/login with JSON {\"id\": ..., \"pw\": ...}"}


@asynccontextmanager
async def app_lifespan(_: FastAPI) -> AsyncIterator[None]:
    settings = get_settings()
    configure_application_logging(settings)
    auth = get_auth_state()
    # Built eagerly so its cache invalidation listener sees every auth change.
    get_listing_service()
    LOGGER.info("mytube started authenticated=%s", auth.poll_status().authenticated)

    try:
        yield
    finally:
        auth.cancel_login()


def create_app() -> FastAPI:
    app = FastAPI(title="MyTube API", version="0.1.0", lifespan=app_lifespan)

    async def request_context_middleware(
        request: Request,
        call_next: Callable[[Request], Awaitable[Response]],
    ) -> Response:
        telemetry = get_telemetry()
        incoming_request_id = request.headers.get("X-Request-ID")
        request_id = (
            incoming_request_id.strip()
            if isinstance(incoming_request_id, str) and incoming_request_id.strip()
            else str(uuid4())
        )
        context_tokens = bind_contextvars(
            http_request_id=request_id,
            http_method=request.method,
            http_path=request.url.path,
        )
        started_at = perf_counter()
        telemetry.emit(
            TelemetryEvent.HTTP_REQUEST_START,
            request_id=request_id,
            method=request.method,
            path=request.url.path,
        )
        try:
            response = await call_next(request)
        except Exception as exc:
            telemetry.emit(
                TelemetryEvent.HTTP_REQUEST_ERROR,
                request_id=request_id,
                method=request.method,
                path=request.url.path,
                duration_ms=elapsed_ms(started_at),
                error_type=type(exc).__name__,
            )
            raise
        else:
            response.headers["X-Request-ID"] = request_id
            telemetry.emit(
                TelemetryEvent.HTTP_REQUEST_FINISH,
                request_id=request_id,
                method=request.method,
                path=request.url.path,
                duration_ms=elapsed_ms(started_at),
                status_code=response.status_code,
            )
            return response
        finally:
            reset_contextvars(**context_tokens)

    async def site_gate_middleware(
        request: Request,
        call_next: Callable[[Request], Awaitable[Response]],
    ) -> Response:
        settings = get_settings()
        if not settings.site_login_enabled or is_public_path(request.url.path):
            return await call_next(request)

        signer = get_site_session_signer()
        if signer is None:
            LOGGER.error("site gate enabled without MYTUBE_SITE_SESSION_SECRET")
            return JSONResponse(
                status_code=500,
                content={"error": "Site login is not configured on the server."},
            )
        if signer.verify(request.cookies.get(SESSION_COOKIE_NAME)) is None:
            if request.url.path.startswith("/api/"):
                return JSONResponse(status_code=401, content={"error": "Site login required."})
            return RedirectResponse(url="/login", status_code=307)
        return await call_next(request)

    async def handle_api_error(_: Request, exc: Exception) -> JSONResponse:
        assert isinstance(exc, ApiError)
        return JSONResponse(status_code=exc.status_code, content=exc.to_content())

    async def handle_validation_error(_: Request, exc: Exception) -> JSONResponse:
        assert isinstance(exc, RequestValidationError)
        first_error = exc.errors()[0] if exc.errors() else {}
        location = ".".join(str(part) for part in first_error.get("loc", ()) if part != "body")
        message = first_error.get("msg", "invalid request")
        return JSONResponse(
            status_code=400,
            content={"error": f"{location}: {message}" if location else message},
        )

    # Registered last so it runs first and the gate inherits the request id.
    app.middleware("http")(site_gate_middleware)
    app.middleware("http")(request_context_middleware)
    app.add_exception_handler(ApiError, handle_api_error)
    app.add_exception_handler(RequestValidationError, handle_validation_error)
    app.include_router(router)
    app.add_api_route(
        "/health",
        health_check,
        methods=["GET"],
        tags=["system"],
        operation_id="health_check",
    )
    app.add_api_route(
        "/login",
        login_hint,
        methods=["GET"],
        tags=["site"],
        operation_id="login_hint",
    )

    return app


app = create_app()
