"""
Vmize Gateway — FastAPI application.

Startup (lifespan):
    1. structured logging
    2. error registry (fail fast on a bad registry)
    3. upstream credential / base URL check (ConfigurationError)
    4. gateway state: database, directory, ledger, analytics, proxy, reconciler

Shutdown flushes analytics and disposes the database engine.
"""

import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware

from vmize_gateway.config import Settings, settings
from vmize_gateway.core.errors import GatewayError
from vmize_gateway.core.errors.middleware import (
    gateway_error_handler,
    unhandled_error_handler,
    validation_error_handler,
)
from vmize_gateway.core.errors.registry import error_registry
from vmize_gateway.core.gateway_state import GatewayState
from vmize_gateway.core.log_middleware import CorrelationMiddleware
from vmize_gateway.core.structured_logging import APP_VERSION, setup_logging
from vmize_gateway.routers import admin, analytics, health, tryon, usage

logger = logging.getLogger(__name__)

API_TITLE = "Vmize Gateway"

TAGS_METADATA = [
    {"name": "health", "description": "Liveness check (no authentication) and admin-only deep check."},
    {"name": "tryon", "description": "Virtual try-on submit and status. **Requires X-Vmize-API-Key.**"},
    {"name": "usage", "description": "Plan usage and remaining quota. **Requires X-Vmize-API-Key.**"},
    {"name": "analytics", "description": "Call analytics, funnel and event tracking."},
    {"name": "admin", "description": "Key issuance, revocation and billing operations. **Requires X-Admin-Token.**"},
]


def create_app(config: Optional[Settings] = None, gateway: Optional[GatewayState] = None) -> FastAPI:
    """Create and configure the FastAPI application.

    *gateway* lets tests inject a pre-built state (with fake collaborators);
    otherwise one is built from *config* during startup.
    """
    config = config or settings

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        setup_logging(
            log_dir=config.log_directory,
            log_level=config.log_level,
            secrets=[config.upstream_api_key, config.admin_token, config.stripe_secret_key],
        )
        logger.info("Starting %s v%s", API_TITLE, APP_VERSION)

        error_registry.load()
        config.require_upstream_credentials()

        state = gateway or GatewayState.build(config)
        app.state.gateway = state
        try:
            yield
        finally:
            logger.info("Shutting down %s", API_TITLE)
            state.close()

    app = FastAPI(
        title=API_TITLE,
        version=APP_VERSION,
        openapi_tags=TAGS_METADATA,
        lifespan=lifespan,
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=config.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.add_middleware(CorrelationMiddleware)

    app.add_exception_handler(GatewayError, gateway_error_handler)
    app.add_exception_handler(RequestValidationError, validation_error_handler)
    app.add_exception_handler(Exception, unhandled_error_handler)

    app.include_router(health.router, tags=["health"])
    app.include_router(tryon.router, prefix="/api", tags=["tryon"])
    app.include_router(usage.router, prefix="/api", tags=["usage"])
    app.include_router(analytics.router, prefix="/api", tags=["analytics"])
    app.include_router(admin.router, prefix="/admin", tags=["admin"])

    return app


app = create_app()
