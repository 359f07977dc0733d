"""
Health check endpoints.

This module reports whether the service is up, which change feed backend
it publishes to, and whether the session table can be queried.
"""

from typing import Any, Dict

from fastapi import APIRouter, Depends
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from tableside.core.config import settings
from tableside.core.logging import logger
from tableside.db.session import get_db
from tableside.services.device_session import DeviceSessionService

router = APIRouter()


@router.get("/", response_model=Dict[str, str])
async def health_check() -> Dict[str, str]:
    """
    Basic health check endpoint.

    Returns:
        Health status and the configured change feed backend
    """
    logger.debug("Health check endpoint called")
    return {"status": "ok", "change_feed": settings.session.change_feed_backend.value}


@router.get("/db", response_model=Dict[str, Any])
async def database_health_check(
    db: AsyncSession = Depends(get_db)
) -> Dict[str, Any]:
    """
    Session table health check.

    Args:
        db: Database session

    Returns:
        Database status and the number of unexpired device sessions
    """
    try:
        active = await DeviceSessionService.count_active(db)
    except SQLAlchemyError as e:
        logger.error(f"Session table health check failed: {e}")
        return {"status": "error", "database": "unreachable"}

    logger.debug(f"Session table reachable, {active} active session(s)")
    return {"status": "ok", "database": "connected", "active_sessions": active}
