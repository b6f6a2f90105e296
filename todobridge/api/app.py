"""FastAPI application for the TodoBridge sync service.

This module provides the main FastAPI application with:
- CORS middleware for the dashboard frontend
- Request logging
- Exception handlers for engine errors
- Microsoft To Do OAuth, webhook and task-event routes
- Background scheduler for polling and lease renewal
"""

import logging
from contextlib import asynccontextmanager
from typing import AsyncGenerator

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware

from todobridge import __version__
from todobridge.api.exceptions import todobridge_exception_handler, unhandled_exception_handler
from todobridge.api.scheduler import SchedulerManager
from todobridge.core.config import AppConfig
from todobridge.core.engine import DisabledSyncEngine, TodoSyncEngine, create_engine
from todobridge.core.exceptions import TodoBridgeError
from todobridge.utils.logging import setup_logging

logger = logging.getLogger(__name__)


def create_app(
    config: AppConfig | None = None,
    engine: TodoSyncEngine | DisabledSyncEngine | None = None,
    start_scheduler: bool = True,
) -> FastAPI:
    """Create and configure the FastAPI application.

    Args:
        config: Configuration to use (loaded on startup when None)
        engine: Prebuilt engine (built from config on startup when None)
        start_scheduler: Run the polling and lease-renewal jobs

    Returns:
        FastAPI: Configured FastAPI application instance
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
        """Startup: config, logging, engine and scheduler. Shutdown: reverse order."""
        logger.info("TodoBridge API starting up...")

        if config is None:
            from todobridge.api.dependencies import get_config

            app_config = get_config()
            setup_logging(app_config)
        else:
            app_config = config
        logger.info(f"Configuration loaded from {app_config.general.config_file or 'defaults'}")

        app_engine = engine or create_engine(app_config)
        await app_engine.initialize()

        scheduler = SchedulerManager(app_engine, app_config)
        if start_scheduler:
            await scheduler.start()

        app.state.config = app_config
        app.state.engine = app_engine
        app.state.scheduler = scheduler

        yield

        logger.info("TodoBridge API shutting down...")
        await scheduler.stop()
        await app_engine.aclose()

    app = FastAPI(
        title="TodoBridge API",
        description="Bidirectional sync between dashboard tasks and Microsoft To Do",
        version=__version__,
        docs_url="/api/docs",
        redoc_url="/api/redoc",
        openapi_url="/api/openapi.json",
        lifespan=lifespan,
    )

    site_url = (config.microsoft.site_url if config else None) or "*"
    app.add_middleware(
        CORSMiddleware,
        allow_origins=[site_url],
        allow_credentials=site_url != "*",
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.middleware("http")
    async def log_requests(request: Request, call_next):
        """Log all incoming requests."""
        logger.debug(f"{request.method} {request.url.path}")
        response = await call_next(request)
        logger.debug(f"{request.method} {request.url.path} - {response.status_code}")
        return response

    app.add_exception_handler(TodoBridgeError, todobridge_exception_handler)
    app.add_exception_handler(Exception, unhandled_exception_handler)

    from todobridge.api.routes import health, microsoft, tasks

    app.include_router(health.router, prefix="/api", tags=["Health"])
    app.include_router(
        microsoft.router, prefix="/api/integrations/microsoft", tags=["Microsoft To Do"]
    )
    app.include_router(tasks.router, prefix="/api/tasks", tags=["Tasks"])

    @app.get("/")
    async def root():
        """Root endpoint - returns API information."""
        return {
            "name": "TodoBridge API",
            "version": __version__,
            "docs": "/api/docs",
            "health": "/api/health",
        }

    logger.debug("FastAPI application created")
    return app


# Application instance used by `todobridge serve`
app = create_app()
