"""FastAPI application entry point and lifecycle management."""

import os
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from iap_reconciler.config import get_config
from iap_reconciler.logging_config import configure_logging, get_logger
from iap_reconciler.middleware import ContextMiddleware, RequestLoggingMiddleware
from iap_reconciler.services.billing_coordinator import build_coordinator

logger = get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Own the billing coordinator for the lifetime of the app."""
    logger.info("reconciler_starting", version="0.1.0")

    coordinator = getattr(app.state, "coordinator", None)
    if coordinator is None:
        coordinator = build_coordinator(get_config())
        app.state.coordinator = coordinator

    try:
        if os.getenv("RECONCILE_ON_START", "yes").lower() == "no":
            logger.info("startup_reconcile_skipped")
        else:
            coordinator.start_data_source_connections()
        logger.info("reconciler_started", status="ready")
        yield
    finally:
        logger.info("reconciler_shutting_down")
        coordinator.end_data_source_connections()
        logger.info("reconciler_stopped")


def create_app() -> FastAPI:
    """Create and configure FastAPI application.

    A coordinator placed on ``app.state.coordinator`` before startup is used
    as-is; otherwise one is built from the global configuration.
    """
    log_level = os.getenv("LOG_LEVEL", "INFO")
    json_format = os.getenv("LOG_FORMAT", "json").lower() == "json"
    configure_logging(log_level=log_level, json_format=json_format)

    app = FastAPI(
        title="IAP Reconciler",
        description="Reconciles billing service purchases into local entitlements",
        version="0.1.0",
        docs_url="/docs",
        redoc_url="/redoc",
        lifespan=lifespan,
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    include_request_details = os.getenv("LOG_REQUEST_DETAILS", "true").lower() == "true"
    app.add_middleware(RequestLoggingMiddleware, include_request_details=include_request_details)
    app.add_middleware(ContextMiddleware)

    from iap_reconciler.api.control import router as control_router

    app.include_router(control_router)

    @app.get("/")
    async def root() -> dict[str, str]:
        logger.debug("root_endpoint_called")
        return {
            "service": "iap-reconciler",
            "status": "running",
            "version": "0.1.0",
        }

    @app.get("/health")
    async def health(request: Request) -> dict[str, str]:
        """Detailed health check."""
        coordinator = request.app.state.coordinator
        connected = coordinator.billing_client.is_ready()
        return {
            "status": "healthy",
            "billing": "connected" if connected else "disconnected",
            "signature_key": "loaded" if coordinator.verifier.has_key else "missing",
            "config": f"loaded ({len(coordinator.products)} products)",
        }

    @app.exception_handler(Exception)
    async def global_exception_handler(request: Request, exc: Exception) -> JSONResponse:
        logger.error(
            "unhandled_exception",
            error=str(exc),
            error_type=type(exc).__name__,
            path=request.url.path,
            exc_info=True,
        )
        return JSONResponse(
            status_code=500,
            content={
                "error": "internal_server_error",
                "message": "An unexpected error occurred",
            },
        )

    logger.info("app_created", endpoints=len(app.routes))
    return app


app = create_app()
