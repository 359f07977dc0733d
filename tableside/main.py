"""
Main application entry point.

This module initializes the FastAPI application serving the device
session table and includes all routers.
"""

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from tableside.core.config import settings
from tableside.core.logging import logger
from tableside.core.middleware import SecurityHeadersMiddleware, RequestLoggingMiddleware
from tableside.db.session import create_schema
from tableside.routers.device_sessions import router as device_sessions_router
from tableside.routers.health import router as health_router
from tableside.routers.rpc import router as rpc_router
from tableside.services.change_feed import change_feed


app = FastAPI(
    title=settings.api.title,
    description=settings.api.description,
    version=settings.api.version,
    debug=settings.debug,
)

# Add middleware in the correct order
app.add_middleware(SecurityHeadersMiddleware)
app.add_middleware(RequestLoggingMiddleware)

origins = settings.frontend_urls

app.add_middleware(
    CORSMiddleware,
    allow_origins=origins,
    allow_credentials=True,
    allow_methods=["GET", "POST", "PATCH", "DELETE"],
    allow_headers=["*"],
    expose_headers=["*"],
)

# Include routers with /api prefix
app.include_router(
    health_router,
    prefix=f"{settings.api.prefix}/health",
    tags=["health"],
)
app.include_router(
    device_sessions_router,
    prefix=f"{settings.api.prefix}/device-sessions",
    tags=["device-sessions"],
)
app.include_router(
    rpc_router,
    prefix=f"{settings.api.prefix}/rpc",
    tags=["rpc"],
)


@app.on_event("startup")
async def startup_event():
    """Actions to run on application startup."""
    logger.info(f"Starting {settings.api.title}")
    logger.info(f"Environment: {settings.environment.value}")
    logger.info(f"Debug mode: {settings.debug}")
    logger.info(f"Database URL: {settings.database.url[:20]}...")
    logger.info(f"Change feed: {settings.session.change_feed_backend.value}")

    await create_schema()

    logger.info(f"API Docs available at: http://{settings.api.host}:{settings.api.port}/docs")


@app.on_event("shutdown")
async def shutdown_event():
    """Actions to run on application shutdown."""
    logger.info(f"Shutting down {settings.api.title}")
    await change_feed.close()


@app.get("/")
async def root():
    """Root endpoint."""
    return {
        "message": settings.api.title,
        "version": settings.api.version,
        "docs": "/docs",
    }
