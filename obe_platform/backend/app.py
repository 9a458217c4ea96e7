"""
OBE Learning Platform
FastAPI application factory and configuration
"""

import logging
import time
import traceback
from typing import Optional

from fastapi import FastAPI, Request, status, HTTPException
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.middleware.gzip import GZipMiddleware
from fastapi.middleware.trustedhost import TrustedHostMiddleware
from fastapi.responses import JSONResponse

# Import API routers
from .api import (
    alerts,
    analytics,
    gamification,
    grading,
    notifications,
    outcomes
)
from .database.connection import check_database_health
from .engine.dispatch import ConnectionManager, NotificationDispatcher
from .exceptions import AppException
from ..config import get_settings

# Configure logging
logger = logging.getLogger(__name__)


class RequestContextMiddleware:
    """Middleware to add request timing"""

    def __init__(self, app):
        self.app = app

    async def __call__(self, scope, receive, send):
        if scope["type"] == "http":
            start_time = time.time()

            async def send_wrapper(message):
                if message["type"] == "http.response.start":
                    process_time = time.time() - start_time
                    message["headers"] = list(message.get("headers", []))
                    message["headers"].append(
                        (b"x-process-time", f"{process_time:.6f}".encode())
                    )
                await send(message)

            await self.app(scope, receive, send_wrapper)
        else:
            await self.app(scope, receive, send)


def create_app(
    dispatcher: Optional[NotificationDispatcher] = None,
    connections: Optional[ConnectionManager] = None,
) -> FastAPI:
    """Create and configure the API application.

    The notification dispatcher is injected; without one, the in-process
    WebSocket connection manager delivers notifications directly.
    """

    settings = get_settings()

    app = FastAPI(
        title="OBE Learning Platform API",
        description="Rubric grading, outcome attainment, gamification and academic alerts",
        version=settings.VERSION,
        docs_url="/docs" if settings.DEBUG else None,
        redoc_url="/redoc" if settings.DEBUG else None,
        openapi_url="/openapi.json" if settings.DEBUG else None,
        default_response_class=JSONResponse
    )

    connections = connections or ConnectionManager()
    app.state.connections = connections
    app.state.dispatcher = dispatcher or connections

    # Add custom middleware
    app.add_middleware(RequestContextMiddleware)

    # Add security middleware
    if not settings.DEBUG and settings.ALLOWED_HOSTS != ["*"]:
        app.add_middleware(
            TrustedHostMiddleware,
            allowed_hosts=settings.ALLOWED_HOSTS
        )

    # Add compression middleware
    app.add_middleware(GZipMiddleware, minimum_size=1000)

    # CORS middleware
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.ALLOWED_HOSTS,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
        expose_headers=["x-process-time"]
    )

    # Exception handlers
    @app.exception_handler(AppException)
    async def app_exception_handler(request: Request, exc: AppException):
        """Handle custom application exceptions"""
        return JSONResponse(
            status_code=exc.status_code,
            content={
                "error": exc.error_code,
                "message": exc.message,
                "details": exc.details,
                "timestamp": time.time()
            }
        )

    @app.exception_handler(RequestValidationError)
    async def validation_exception_handler(request: Request, exc: RequestValidationError):
        """Handle request validation errors"""
        return JSONResponse(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            content={
                "error": "VALIDATION_ERROR",
                "message": "Request validation failed",
                "details": jsonable_errors(exc),
                "timestamp": time.time()
            }
        )

    @app.exception_handler(HTTPException)
    async def http_exception_handler(request: Request, exc: HTTPException):
        """Handle HTTP exceptions"""
        return JSONResponse(
            status_code=exc.status_code,
            content={
                "error": "HTTP_ERROR",
                "message": exc.detail,
                "timestamp": time.time()
            }
        )

    @app.exception_handler(Exception)
    async def general_exception_handler(request: Request, exc: Exception):
        """Handle unexpected exceptions"""
        logger.exception(f"Unexpected error: {exc}")

        content = {
            "error": "INTERNAL_ERROR",
            "message": str(exc) if settings.DEBUG else "An internal server error occurred",
            "timestamp": time.time()
        }
        if settings.DEBUG:
            content["traceback"] = traceback.format_exc()
        return JSONResponse(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, content=content)

    # Health check endpoint
    @app.get("/health", tags=["System"])
    async def health_check():
        """API health check endpoint"""
        database = await check_database_health()
        return {
            "status": database["status"],
            "api_version": settings.VERSION,
            "environment": settings.ENVIRONMENT,
            "database": database,
            "notification_backend": settings.NOTIFICATION_BACKEND,
            "timestamp": time.time()
        }

    # Include API routers
    app.include_router(grading.router, prefix="/grading", tags=["Grading"])
    app.include_router(outcomes.router, prefix="/outcomes", tags=["Outcomes"])
    app.include_router(gamification.router, prefix="/gamification", tags=["Gamification"])
    app.include_router(alerts.router, prefix="/alerts", tags=["Alerts"])
    app.include_router(notifications.router, prefix="/notifications", tags=["Notifications"])
    app.include_router(analytics.router, prefix="/analytics", tags=["Analytics"])

    logger.info("Backend API configured successfully")
    return app


def jsonable_errors(exc: RequestValidationError):
    # ctx may carry exception instances
    return [
        {key: (str(value) if key == "ctx" else value) for key, value in error.items()}
        for error in exc.errors()
    ]


# Export the app factory
__all__ = ["create_app"]
