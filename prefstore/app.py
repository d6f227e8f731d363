"""
FastAPI application entry point for the preference service.
"""

from __future__ import annotations

import logging
import time
from typing import Optional

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from starlette.exceptions import HTTPException as StarletteHTTPException

from prefstore.auth import TokenVerifier
from prefstore.config import Settings, get_settings
from prefstore.dependencies import build_store
from prefstore.errors import (
    AuthenticationError,
    AuthorizationError,
    InvalidRequestError,
    StoreError,
    error_response,
)
from prefstore.routes import health_router, router
from prefstore.store import PreferenceStore

logger = logging.getLogger(__name__)

LOG_FORMAT = "%(name)s %(levelname)s %(asctime)s %(message)s"


def configure_logging(level: int) -> None:
    logging.basicConfig(level=level, format=LOG_FORMAT)
    logging.getLogger().setLevel(level)


def register_exception_handlers(app: FastAPI) -> None:
    """Render every failure as {"error": ..., "code": ...}."""

    @app.exception_handler(StarletteHTTPException)
    async def http_error(request: Request, exc: StarletteHTTPException):
        return error_response(
            exc.status_code, str(exc.detail), getattr(exc, "headers", None)
        )

    @app.exception_handler(RequestValidationError)
    async def request_validation_error(request: Request, exc: RequestValidationError):
        return error_response(400, "invalid request")

    @app.exception_handler(InvalidRequestError)
    async def invalid_request(request: Request, exc: InvalidRequestError):
        return error_response(400, str(exc))

    @app.exception_handler(AuthenticationError)
    async def authentication_error(request: Request, exc: AuthenticationError):
        return error_response(401, str(exc), {"WWW-Authenticate": "Bearer"})

    @app.exception_handler(AuthorizationError)
    async def authorization_error(request: Request, exc: AuthorizationError):
        return error_response(403, str(exc))

    @app.exception_handler(StoreError)
    async def store_error(request: Request, exc: StoreError):
        logger.error(
            "Unhandled store failure kind=%s path=%s error=%s",
            exc.kind,
            request.url.path,
            exc,
        )
        return error_response(500, "internal server error")

    @app.exception_handler(Exception)
    async def unhandled_error(request: Request, exc: Exception):
        logger.exception("Unhandled error on %s %s", request.method, request.url.path)
        return error_response(500, "internal server error")


def create_app(
    settings: Optional[Settings] = None,
    store: Optional[PreferenceStore] = None,
    verifier: Optional[TokenVerifier] = None,
) -> FastAPI:
    settings = settings or get_settings()
    configure_logging(settings.logging_level)

    app = FastAPI(title="Preference Service", version="0.1.0")
    app.state.settings = settings
    app.state.store = store if store is not None else build_store(settings)
    app.state.verifier = verifier or TokenVerifier.from_settings(settings)

    @app.middleware("http")
    async def log_requests(request: Request, call_next):
        start = time.perf_counter()
        response = await call_next(request)
        logger.info(
            "request method=%s path=%s status=%d duration_ms=%.1f",
            request.method,
            request.url.path,
            response.status_code,
            (time.perf_counter() - start) * 1000,
        )
        return response

    app.add_middleware(
        CORSMiddleware,
        allow_origins=[settings.cors_allow_origin],
        allow_methods=["GET", "POST", "PUT", "PATCH", "DELETE", "OPTIONS"],
        allow_headers=["Authorization", "Content-Type"],
    )

    register_exception_handlers(app)
    app.include_router(health_router)
    app.include_router(router, prefix=settings.api_prefix)
    return app
