# middleware.py
"""
Middleware for security headers and request logging.
"""
from typing import Callable
from datetime import datetime, timezone
from fastapi import Request
from starlette.middleware.base import BaseHTTPMiddleware
from tableside.core.config import settings
from tableside.core.logging import logger


class SecurityHeadersMiddleware(BaseHTTPMiddleware):
    """Add security headers to all responses."""

    async def dispatch(self, request: Request, call_next: Callable):
        response = await call_next(request)

        # Add security headers
        response.headers["X-Content-Type-Options"] = "nosniff"
        response.headers["X-Frame-Options"] = "DENY"
        response.headers["Referrer-Policy"] = "strict-origin-when-cross-origin"
        response.headers["Permissions-Policy"] = "camera=(), microphone=(), geolocation=()"
        response.headers["Strict-Transport-Security"] = "max-age=31536000; includeSubDomains"

        return response


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    """Log every request with its outcome; flag slow requests and rejected writes."""

    async def dispatch(self, request: Request, call_next: Callable):
        start_time = datetime.now(tz=timezone.utc)

        # Get client info
        client_ip = request.client.host if request.client else None
        has_token = settings.session.token_header in request.headers

        response = await call_next(request)

        # Calculate request duration
        duration = (datetime.now(tz=timezone.utc) - start_time).total_seconds()

        logger.info(
            f"Request: {request.method} {request.url.path} | "
            f"Status: {response.status_code} | "
            f"Duration: {duration:.3f}s | "
            f"Token: {'yes' if has_token else 'no'} | "
            f"IP: {client_ip}"
        )

        # Log slow requests
        if duration > 2.0:
            logger.warning(
                f"Slow request detected: {request.method} {request.url.path} | "
                f"Duration: {duration:.3f}s | "
                f"IP: {client_ip}"
            )

        # Log rejected session writes
        if response.status_code in [401, 403]:
            logger.warning(
                f"Session write rejected: {response.status_code} | "
                f"Path: {request.url.path} | "
                f"IP: {client_ip}"
            )

        return response
