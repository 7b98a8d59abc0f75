"""
FastAPI application factory for DualStore.

This module creates the FastAPI app with:
- CORS configuration
- DualStoreService lifecycle management
- Internal outbox routes and public conflict/record routes
- Error mapping from the DualStore error taxonomy to HTTP statuses
"""

from contextlib import asynccontextmanager
from typing import AsyncGenerator

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from .._version import __version__
from ..errors import (
    ConfigError,
    DualStoreError,
    NotFoundError,
    StoreError,
    UnauthorizedError,
    ValidationError,
)
from ..service import DualStoreService
from .routes import internal_router, router
from .settings import HttpSettings

_STATUS_BY_ERROR: list[tuple[type[DualStoreError], int]] = [
    (UnauthorizedError, 401),
    (ValidationError, 400),
    (NotFoundError, 404),
    (StoreError, 503),
    (ConfigError, 500),
]


def status_for(error: DualStoreError) -> int:
    for error_type, status in _STATUS_BY_ERROR:
        if isinstance(error, error_type):
            return status
    return 500


async def handle_dualstore_error(request: Request, exc: DualStoreError) -> JSONResponse:
    if isinstance(exc, UnauthorizedError):
        return JSONResponse({"error": "Unauthorized"}, status_code=401)
    return JSONResponse(
        {"error": exc.message, "code": exc.code, "details": exc.details},
        status_code=status_for(exc),
    )


def create_app(
    service: DualStoreService | None = None,
    settings: HttpSettings | None = None,
) -> FastAPI:
    """Create and configure the FastAPI application.

    Args:
        service: Service to serve (built from the environment if omitted)
        settings: HTTP settings (loaded from the environment if omitted)
    """
    settings = settings or HttpSettings()
    service = service or DualStoreService()

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
        """Manage DualStoreService lifecycle."""
        await service.start()
        yield
        await service.close()

    app = FastAPI(
        title="DualStore",
        description="Zero-downtime migration layer between a legacy and a target datastore.",
        version=__version__,
        lifespan=lifespan,
    )
    app.state.service = service
    app.state.settings = settings

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["GET", "POST", "PUT", "DELETE", "OPTIONS"],
        allow_headers=["*"],
        expose_headers=["X-Cache-Status", "Server-Timing"],
    )

    app.add_exception_handler(DualStoreError, handle_dualstore_error)  # type: ignore[arg-type]

    app.include_router(internal_router)
    app.include_router(router, prefix="/api/v1")

    @app.get("/health")
    async def health():
        return await service.health()

    return app
