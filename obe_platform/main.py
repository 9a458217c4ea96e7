#!/usr/bin/env python3
"""
OBE Learning Platform
Main application entry point
"""

import logging
import sys
from contextlib import asynccontextmanager
from typing import Optional

import uvicorn
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.middleware.gzip import GZipMiddleware

from .backend.app import create_app
from .backend.database.connection import (
    check_database_health,
    close_database_connections,
    get_async_session,
    init_database
)
from .backend.dependencies import cleanup_dependencies, get_redis_client
from .backend.engine.dispatch import ConnectionManager, build_dispatcher
from .backend.engine.scheduler import AlertSweepScheduler, run_alert_sweep
from .backend.utils.helpers import setup_logging
from .config import get_settings

# Configure logging
logger = logging.getLogger(__name__)


def create_main_app() -> FastAPI:
    """Create the main app with the API mounted under /api"""

    settings = get_settings()
    connections = ConnectionManager()
    scheduler: Optional[AlertSweepScheduler] = None

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Application lifespan manager for startup and shutdown events"""
        nonlocal scheduler

        # Startup
        logger.info("Starting OBE Learning Platform...")
        await init_database()

        redis_client = None
        if settings.NOTIFICATION_BACKEND == "redis":
            redis_client = await get_redis_client()
        dispatcher = build_dispatcher(
            settings.NOTIFICATION_BACKEND,
            connections,
            redis_client,
            settings.REDIS_CHANNEL_PREFIX,
        )
        backend_app.state.dispatcher = dispatcher

        if settings.ENABLE_ALERT_SWEEP:
            scheduler = AlertSweepScheduler(
                lambda: run_alert_sweep(get_async_session, dispatcher),
                settings.ALERT_SWEEP_INTERVAL_SECONDS,
            )
            scheduler.start()

        logger.info("Application startup complete")

        yield

        # Shutdown
        logger.info("Shutting down application...")
        if scheduler is not None:
            await scheduler.stop()
        await cleanup_dependencies()
        await close_database_connections()
        logger.info("Application shutdown complete")

    main_app = FastAPI(
        title="OBE Learning Platform",
        description="Outcome-based education core: grading, attainment, gamification and alerts",
        version=settings.VERSION,
        docs_url="/api/docs" if settings.DEBUG else None,
        redoc_url="/api/redoc" if settings.DEBUG else None,
        lifespan=lifespan,
        openapi_url="/api/openapi.json" if settings.DEBUG else None
    )

    # Add middleware
    main_app.add_middleware(GZipMiddleware, minimum_size=1000)
    main_app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.ALLOWED_HOSTS,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # Mount the backend API
    backend_app = create_app(connections=connections)
    main_app.mount("/api", backend_app)

    # Health check endpoint
    @main_app.get("/health")
    async def health_check():
        """Application health check endpoint"""
        database = await check_database_health()
        return {
            "status": database["status"],
            "version": settings.VERSION,
            "environment": settings.ENVIRONMENT,
            "database": database["database"],
            "alert_sweep": scheduler.is_running if scheduler else False,
        }

    return main_app


def main():
    """Main entry point"""
    setup_logging()

    settings = get_settings()
    logger.info(f"Starting application in {settings.ENVIRONMENT} mode")

    try:
        uvicorn.run(
            "obe_platform.main:app_instance",
            host=settings.HOST,
            port=settings.PORT,
            reload=settings.DEBUG,
            log_level="info" if settings.DEBUG else "warning",
            access_log=settings.DEBUG,
            ws_ping_interval=20,
            ws_ping_timeout=20
        )
    except KeyboardInterrupt:
        logger.info("Application stopped by user")
    except Exception as e:
        logger.error(f"Application failed to start: {e}")
        sys.exit(1)


# Create app instance for uvicorn
app_instance = create_main_app()

if __name__ == "__main__":
    main()
