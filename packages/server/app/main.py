"""
Klypp Backend Server

Entry point for the FastAPI application.
"""

import structlog
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from app.api.v1 import realtime_router, rest_router
from app.core.config import get_settings
from app.core.database import init_db, ping_database
from app.core.middleware import RequestLogMiddleware, SecurityHeadersMiddleware
from app.core.redis import close_redis, ping_redis

settings = get_settings()
log = structlog.get_logger()


def create_app() -> FastAPI:
    """Create and configure the FastAPI application."""
    app = FastAPI(
        title="Klypp",
        description="Relational backend for shared subscriptions.",
        version="0.1.0",
        docs_url="/docs",
        redoc_url="/redoc",
        openapi_url="/openapi.json",
    )

    # Middleware (the last one added runs outermost)
    app.add_middleware(SecurityHeadersMiddleware)
    app.add_middleware(RequestLogMiddleware)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["GET", "POST", "PATCH", "DELETE"],
        allow_headers=["Content-Type", "Authorization", "Prefer", "X-Request-Id"],
    )

    app.include_router(rest_router, prefix="/rest/v1")
    app.include_router(realtime_router, prefix="/realtime/v1")

    @app.get("/health", tags=["System"])
    async def health_check():
        """Health check endpoint for liveness probes."""
        return {"status": "ok"}

    @app.get("/ready", tags=["System"])
    async def readiness_check():
        """Readiness check: database and Redis must both answer."""
        checks = {
            "database": await ping_database(),
            "redis": await ping_redis(),
        }
        ready = all(checks.values())
        return JSONResponse(
            status_code=200 if ready else 503,
            content={"status": "ready" if ready else "degraded", "checks": checks},
        )

    @app.on_event("startup")
    async def on_startup():
        log.info("klypp.starting", debug=settings.debug)
        if settings.auto_create_tables:
            await init_db()
            log.info("klypp.tables_created")

    @app.on_event("shutdown")
    async def on_shutdown():
        log.info("klypp.shutting_down")
        await close_redis()

    return app


app = create_app()
