"""FastAPI application entry-point for the Keygate client API."""

from __future__ import annotations

import logging
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from keygate_core.errors import InfrastructureError
from keygate_core.state import create_tables

from keygate_api import __version__
from keygate_api.config import APISettings, load_api_settings
from keygate_api.dependencies import (
    dispose_dispatcher,
    dispose_engine,
    get_core_settings,
    init_dispatcher,
    init_engine,
)
from keygate_api.middleware.logging import CorrelationLoggingFilter, RequestLoggingMiddleware
from keygate_api.routers import client, health

logger = logging.getLogger(__name__)


def configure_structured_logging() -> None:
    """Replace the root handlers with a single-line JSON handler."""
    from keygate_api.middleware.json_formatter import JSONFormatter

    root_logger = logging.getLogger()
    root_logger.handlers.clear()
    handler = logging.StreamHandler()
    handler.setFormatter(JSONFormatter())
    handler.addFilter(CorrelationLoggingFilter())
    root_logger.addHandler(handler)
    root_logger.setLevel(logging.INFO)


# ---------------------------------------------------------------------------
# Lifespan
# ---------------------------------------------------------------------------


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Application startup / shutdown lifecycle.

    On startup:
    - Initialise the async database engine.
    - Create missing tables when ``auto_create_tables`` is set.
    - Initialise the webhook dispatcher and its HTTP client.

    On shutdown:
    - Let in-flight webhook deliveries finish and close the HTTP client.
    - Dispose the database engine connection pool.
    """
    settings: APISettings = load_api_settings()

    if settings.structured_logging:
        configure_structured_logging()
        logger.info("Structured JSON logging enabled")

    engine = init_engine(settings)
    is_local = settings.database_url.startswith("sqlite")
    logger.info(
        "Database engine initialised (%s, %s)",
        settings.database_url[:40] + "...",
        "local" if is_local else "postgres",
    )

    if settings.auto_create_tables:
        await create_tables(engine)

    init_dispatcher(get_core_settings())
    logger.info("Webhook dispatcher initialised")

    yield

    await dispose_dispatcher()
    await dispose_engine()
    logger.info("Application shutdown complete")


# ---------------------------------------------------------------------------
# Application factory
# ---------------------------------------------------------------------------


def create_app() -> FastAPI:
    """Construct and configure the FastAPI application."""
    settings = load_api_settings()

    app = FastAPI(
        title="Keygate API",
        description="License-key and end-user authentication for distributed software.",
        version=__version__,
        debug=settings.debug,
        lifespan=lifespan,
    )

    # -- Middleware (outermost first) ----------------------------------------

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=settings.cors_allow_credentials,
        allow_methods=["GET", "POST", "OPTIONS"],
        allow_headers=[
            "Content-Type",
            "X-API-Key",
            "X-Correlation-ID",
            "Accept",
        ],
    )
    app.add_middleware(RequestLoggingMiddleware)

    # -- Routers -------------------------------------------------------------

    app.include_router(health.router, prefix="/api/v1")
    app.include_router(client.router, prefix="/api/v1")

    # -- Exception handlers --------------------------------------------------

    @app.exception_handler(InfrastructureError)
    async def infrastructure_error_handler(request: Request, exc: InfrastructureError) -> JSONResponse:
        # The orchestrator has already logged the cause with its traceback.
        logger.warning("InfrastructureError on %s: %s", request.url.path, exc)
        return JSONResponse(
            status_code=503,
            content={"success": False, "message": "Service temporarily unavailable; try again."},
        )

    return app


# Module-level application instance used by ``uvicorn keygate_api.main:app``.
app = create_app()

