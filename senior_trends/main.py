from __future__ import annotations

import logging
from collections.abc import AsyncIterator, Awaitable, Callable
from contextlib import asynccontextmanager
from time import perf_counter
from uuid import uuid4

from fastapi import FastAPI, Request, Response
from structlog.contextvars import bind_contextvars, reset_contextvars

from senior_trends.api.routes import router
from senior_trends.dependencies import get_scan_service, get_settings, get_telemetry
from senior_trends.logging_config import configure_application_logging

LOGGER = logging.getLogger("senior_trends.api")
REQUEST_ID_HEADER = "X-Request-ID"


def health_check() -> dict[str, str]:
    return {"status": "ok"}


@asynccontextmanager
async def app_lifespan(_: FastAPI) -> AsyncIterator[None]:
    configure_application_logging(get_settings())
    service = get_scan_service()
    try:
        yield
    finally:
        # A scan still running at shutdown returns its partial results and exits.
        if service.cancel_scan():
            LOGGER.info("active scan cancelled on shutdown")


def _request_id(request: Request) -> str:
    incoming = request.headers.get(REQUEST_ID_HEADER)
    if isinstance(incoming, str) and incoming.strip():
        return incoming.strip()
    return uuid4().hex


def _elapsed_ms(started_at: float) -> int:
    return int((perf_counter() - started_at) * 1000)


async def request_context_middleware(
    request: Request,
    call_next: Callable[[Request], Awaitable[Response]],
) -> Response:
    telemetry = get_telemetry()
    request_id = _request_id(request)
    # Paths are left out; credential routes carry the API key.
    context_tokens = bind_contextvars(http_request_id=request_id, http_method=request.method)
    started_at = perf_counter()
    try:
        response = await call_next(request)
    except Exception as exc:
        telemetry.emit(
            "api.request.error",
            request_id=request_id,
            method=request.method,
            duration_ms=_elapsed_ms(started_at),
            error_type=type(exc).__name__,
        )
        raise
    finally:
        reset_contextvars(**context_tokens)

    response.headers[REQUEST_ID_HEADER] = request_id
    telemetry.emit(
        "api.request.finish",
        request_id=request_id,
        method=request.method,
        duration_ms=_elapsed_ms(started_at),
        status_code=response.status_code,
    )
    return response


def create_app() -> FastAPI:
    app = FastAPI(title="Senior YouTube Trends API", version="0.1.0", lifespan=app_lifespan)
    app.middleware("http")(request_context_middleware)
    app.include_router(router)
    app.add_api_route(
        "/health",
        health_check,
        methods=["GET"],
        tags=["system"],
        operation_id="health_check",
    )
    return app


app = create_app()
