"""
DataPraktis - FastAPI Application
==================================

Main application factory with all routers and middleware.
"""

import asyncio
from contextlib import asynccontextmanager
from typing import AsyncGenerator

import structlog
from fastapi import FastAPI, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy import text

from datapraktis.api import cron, milestones, payments, projects, withdrawals
from datapraktis.api.deps import get_payment_gateway
from datapraktis.core.config import settings
from datapraktis.core.database import close_db, get_db_session, init_db
from datapraktis.core.exceptions import (
    ExternalServiceFailure,
    InvalidSignature,
    SettlementError,
    UnknownOrderReference,
)
from datapraktis.core.schemas import ErrorResponse, HealthResponse
from datapraktis.core.settlement.auto_release import AutoReleaseScheduler
from datapraktis.core.settlement.gateway import MidtransGateway

# Configure structured logging
structlog.configure(
    processors=[
        structlog.stdlib.filter_by_level,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.stdlib.PositionalArgumentsFormatter(),
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        structlog.processors.UnicodeDecoder(),
        structlog.processors.JSONRenderer() if settings.is_production else structlog.dev.ConsoleRenderer(),
    ],
    wrapper_class=structlog.stdlib.BoundLogger,
    context_class=dict,
    logger_factory=structlog.stdlib.LoggerFactory(),
    cache_logger_on_first_use=True,
)

logger = structlog.get_logger()

# Gateway callback rejections worth investigating (spoofing, misconfiguration)
SUSPICIOUS_ERRORS = (InvalidSignature, UnknownOrderReference, ExternalServiceFailure)


# ==========================================================================
# Lifespan
# ==========================================================================

@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """
    Application lifespan handler.

    Startup:
    - Initialize database
    - Start the in-process auto-release loop when enabled

    Shutdown:
    - Stop the loop between sweeps
    - Close gateway and database connections
    """
    logger.info("Starting DataPraktis settlement engine", version=settings.APP_VERSION)

    await init_db()
    logger.info("Database initialized")

    scheduler = None
    scheduler_task = None
    if settings.AUTO_RELEASE_ENABLED:
        scheduler = AutoReleaseScheduler()
        scheduler_task = asyncio.create_task(
            scheduler.run_forever(settings.AUTO_RELEASE_INTERVAL_SECONDS)
        )
        logger.info("Auto-release scheduler started", interval=settings.AUTO_RELEASE_INTERVAL_SECONDS)

    yield

    logger.info("Shutting down DataPraktis settlement engine")
    if scheduler is not None and scheduler_task is not None:
        scheduler.stop()
        await scheduler_task

    if get_payment_gateway.cache_info().currsize:
        gateway = get_payment_gateway()
        if isinstance(gateway, MidtransGateway):
            await gateway.close()

    await close_db()
    logger.info("Database connections closed")


# ==========================================================================
# App Factory
# ==========================================================================

def create_app() -> FastAPI:
    """
    Create and configure the FastAPI application.

    Returns:
        Configured FastAPI application
    """
    app = FastAPI(
        title=settings.APP_NAME,
        version=settings.APP_VERSION,
        description="DataPraktis - engagement formation, milestone escrow and analyst payouts",
        docs_url="/docs" if settings.is_development else None,
        redoc_url="/redoc" if settings.is_development else None,
        openapi_url="/openapi.json" if settings.is_development else None,
        lifespan=lifespan,
    )

    # ==========================================================================
    # Middleware
    # ==========================================================================

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.CORS_ORIGINS,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # ==========================================================================
    # Exception Handlers
    # ==========================================================================

    @app.exception_handler(SettlementError)
    async def settlement_exception_handler(request: Request, exc: SettlementError) -> JSONResponse:
        """Render settlement errors with their HTTP status and code."""
        log = logger.warning if isinstance(exc, SUSPICIOUS_ERRORS) else logger.info
        log(
            "Request rejected",
            code=exc.code,
            detail=exc.message,
            path=request.url.path,
            method=request.method,
        )
        return JSONResponse(
            status_code=exc.status_code,
            content=ErrorResponse(
                error=type(exc).__name__,
                detail=exc.message,
                code=exc.code,
            ).model_dump(),
        )

    @app.exception_handler(Exception)
    async def global_exception_handler(request: Request, exc: Exception) -> JSONResponse:
        """Handle uncaught exceptions."""
        logger.error(
            "Unhandled exception",
            exc_info=exc,
            path=request.url.path,
            method=request.method,
        )

        if settings.is_development:
            detail = str(exc)
        else:
            detail = "An unexpected error occurred"

        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content=ErrorResponse(
                error="Internal Server Error",
                detail=detail,
                code="INTERNAL_ERROR",
            ).model_dump(),
        )

    # ==========================================================================
    # Routers
    # ==========================================================================

    @app.get(
        "/health",
        response_model=HealthResponse,
        tags=["Health"],
        summary="Health check",
    )
    async def health_check() -> HealthResponse:
        """
        Check application health, including a database round trip.
        """
        database = "connected"
        try:
            async with get_db_session() as session:
                await session.execute(text("SELECT 1"))
        except Exception as e:
            logger.error("Health check database failure", error=str(e))
            database = "unavailable"

        return HealthResponse(
            status="healthy" if database == "connected" else "degraded",
            version=settings.APP_VERSION,
            environment=settings.ENVIRONMENT,
            database=database,
        )

    # API v1 routes
    app.include_router(projects.router, prefix=settings.API_V1_PREFIX)
    app.include_router(milestones.router, prefix=settings.API_V1_PREFIX)
    app.include_router(payments.router, prefix=settings.API_V1_PREFIX)
    app.include_router(withdrawals.router, prefix=settings.API_V1_PREFIX)
    app.include_router(withdrawals.admin_router, prefix=settings.API_V1_PREFIX)
    app.include_router(cron.router, prefix=settings.API_V1_PREFIX)

    # ==========================================================================
    # Root Endpoint
    # ==========================================================================

    @app.get("/", tags=["Root"])
    async def root() -> dict:
        """Root endpoint with API info."""
        return {
            "name": settings.APP_NAME,
            "version": settings.APP_VERSION,
            "docs": "/docs" if settings.is_development else "Disabled in production",
            "health": "/health",
            "api": settings.API_V1_PREFIX,
        }

    return app


# ==========================================================================
# Application Instance
# ==========================================================================

app = create_app()


# ==========================================================================
# Development Server
# ==========================================================================

if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "datapraktis.api.main:app",
        host="0.0.0.0",
        port=8000,
        reload=settings.is_development,
        log_level="info",
    )
