"""
Pixel Art VJ sync backend - FastAPI Application

Thin server behind the custom REST sync provider: login and per-user
record storage.
"""
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
import structlog
import logging

from pixelsync.config import get_settings
from pixelsync.auth.routes import router as auth_router
from pixelsync.remote_db import server_db
from pixelsync.sync.routes import router as sync_router


settings = get_settings()

# Configure structured logging
structlog.configure(
    processors=[
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        structlog.processors.JSONRenderer()
    ],
    wrapper_class=structlog.make_filtering_bound_logger(
        logging.getLevelName(settings.log_level.upper())
    ),
    context_class=dict,
    logger_factory=structlog.PrintLoggerFactory(),
    cache_logger_on_first_use=True,
)

logger = structlog.get_logger()


# Create FastAPI app
app = FastAPI(
    title=settings.app_name,
    description="Offline-first sync backend",
    version="0.1.0",
    docs_url="/docs" if settings.debug else None,
    redoc_url="/redoc" if settings.debug else None
)


# CORS Configuration
app.add_middleware(
    CORSMiddleware,
    allow_origins=[
        "http://localhost:3000",  # Local development
        "http://localhost:5173",  # Vite dev server
    ],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# Include routers
app.include_router(auth_router)
app.include_router(sync_router)


@app.get("/")
async def root():
    """Root endpoint."""
    return {
        "service": settings.app_name,
        "version": "0.1.0",
        "status": "operational",
        "environment": settings.environment
    }


@app.get("/api/health")
async def health_check():
    """Health check endpoint, probed by devices before enabling sync."""
    return {
        "status": "ok",
        "message": f"{settings.app_name} server is running"
    }


@app.on_event("startup")
async def startup_event():
    """Run on application startup."""
    logger.info(
        "application_starting",
        environment=settings.environment,
        debug=settings.debug
    )

    try:
        await server_db.get_client()
        logger.info("server_database_initialized")
    except Exception as e:
        logger.error("server_database_initialization_failed", error=str(e))
        # Don't crash the app, but log the error


@app.on_event("shutdown")
async def shutdown_event():
    """Run on application shutdown."""
    logger.info("application_shutting_down")
    await server_db.close()


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "pixelsync.main:app",
        host=settings.host,
        port=settings.port,
        reload=settings.debug,
        log_level=settings.log_level
    )
