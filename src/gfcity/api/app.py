# src/gfcity/api/app.py
"""
FastAPI application wiring.

This file creates the `FastAPI` instance, installs CORS and per-client rate
limiting, and maps the domain error taxonomy onto JSON responses.
Business logic lives in `gfcity.service.orchestrator`; endpoints in
`gfcity.api.routes` and `gfcity.api.webhooks`.
"""

from __future__ import annotations

import logging
import traceback
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.middleware.cors import CORSMiddleware

from gfcity import __version__
from gfcity.api import deps
from gfcity.config.settings import get_settings
from gfcity.core.logging import configure_logging
from gfcity.core.rate_limit import KeyedRateLimiter
from gfcity.domain.errors import GfcError

from .routes import router
from .webhooks import router as webhooks_router

configure_logging()

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    yield
    # Only close a dispatcher that was actually built (tests swap the factory out).
    cache_info = getattr(deps.get_service, "cache_info", None)
    if cache_info is not None and cache_info().currsize:
        deps.get_service().notifier.close()


settings = get_settings()

app = FastAPI(title="Garbage Free City API", version=__version__, lifespan=lifespan)

if settings.api.cors_origins:
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.api.cors_origins,
        allow_credentials=False,
        allow_methods=["*"],
        allow_headers=["*"],
    )

_limiter = KeyedRateLimiter(
    max_events=settings.api.rate_limit_max_requests,
    window_seconds=settings.api.rate_limit_window_seconds,
)


@app.middleware("http")
async def rate_limit(request: Request, call_next):
    # Gateways are not throttled: a dropped callback would only be retried.
    if request.url.path.startswith("/api/"):
        client = request.client.host if request.client else "unknown"
        if not _limiter.try_acquire(client):
            return JSONResponse(
                status_code=429,
                content={
                    "success": False,
                    "kind": "rate_limited",
                    "message": "Too many requests from this IP, please try again later.",
                },
            )
    return await call_next(request)


def _error_body(kind: str, message: str, exc: Exception, details: dict | None = None) -> dict:
    body: dict = {"success": False, "kind": kind, "message": message}
    if details:
        body["details"] = details
    if get_settings().app.debug:
        body["traceback"] = "".join(traceback.format_exception(type(exc), exc, exc.__traceback__))
    return body


@app.exception_handler(GfcError)
async def handle_domain_error(request: Request, exc: GfcError) -> JSONResponse:
    if exc.http_status >= 500:
        logger.error("%s %s failed: %s", request.method, request.url.path, exc.message)
    d = exc.as_dict()
    return JSONResponse(status_code=exc.http_status, content=_error_body(d["kind"], d["message"], exc, d.get("details")))


@app.exception_handler(RequestValidationError)
async def handle_request_validation(request: Request, exc: RequestValidationError) -> JSONResponse:
    errors = exc.errors()
    message = str(errors[0].get("msg")) if errors else "Invalid request"
    fields = {".".join(str(p) for p in e.get("loc", ())): str(e.get("msg")) for e in errors}
    return JSONResponse(status_code=400, content=_error_body("validation_error", message, exc, fields))


@app.exception_handler(Exception)
async def handle_unexpected(request: Request, exc: Exception) -> JSONResponse:
    logger.exception("Unhandled error on %s %s", request.method, request.url.path)
    return JSONResponse(status_code=500, content=_error_body("internal_error", "Something went wrong!", exc))


app.include_router(router)
app.include_router(webhooks_router)
