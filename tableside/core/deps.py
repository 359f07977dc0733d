"""
Dependencies for FastAPI endpoints.

This module provides the request-scoped session token credential.
"""

from typing import Optional

from fastapi import HTTPException, Request, status

from tableside.core.config import settings
from tableside.core.logging import logger


async def get_session_token(request: Request) -> str:
    """
    Extract the caller's session token from the configured header.

    Raises:
        HTTPException: If the header is missing or blank
    """
    token: Optional[str] = request.headers.get(settings.session.token_header)
    if not token or not token.strip():
        logger.warning(f"Missing session token header on {request.method} {request.url.path}")
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Missing session token",
        )
    return token.strip()

