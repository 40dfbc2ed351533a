"""
HTTP hardening for the relay server.

Provides:
- CORS configuration from the single allowed origin setting
- Request logging with a last-resort error boundary
- Basic security headers
"""

import logging
import time
from typing import Any, Callable, Dict

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.responses import JSONResponse

from tracklive.core.config import settings

logger = logging.getLogger(__name__)


class RequestMonitoringMiddleware(BaseHTTPMiddleware):
    """Logs every HTTP request and turns unhandled exceptions into a 500 response."""

    def __init__(self, app: Callable, enable_security_headers: bool = True):
        super().__init__(app)
        self.enable_security_headers = enable_security_headers

    async def dispatch(self, request: Request, call_next):
        start_time = time.time()
        try:
            response = await call_next(request)
        except Exception as e:
            logger.error(
                f"RequestMonitoringMiddleware: Exception in {request.method} {request.url.path}: {e}",
                exc_info=True
            )
            response = JSONResponse(status_code=500, content={"detail": "Internal server error"})

        elapsed_ms = round((time.time() - start_time) * 1000, 2)
        logger.debug(f"{request.method} {request.url.path} -> {response.status_code} in {elapsed_ms}ms")

        if self.enable_security_headers:
            response.headers["X-Content-Type-Options"] = "nosniff"
            response.headers["Referrer-Policy"] = "strict-origin-when-cross-origin"
        return response


def get_cors_config() -> Dict[str, Any]:
    """CORS options for the configured origin(s); '*' opens the API to any origin."""
    origins = settings.cors_origins
    if "*" in origins:
        return {
            "allow_origins": ["*"],
            "allow_credentials": False,
            "allow_methods": ["*"],
            "allow_headers": ["*"]
        }
    return {
        "allow_origins": origins,
        "allow_credentials": True,
        "allow_methods": ["GET", "OPTIONS"],
        "allow_headers": ["*"]
    }


def configure_security_middleware(app: FastAPI):
    """Configure CORS and request monitoring for the application."""
    app.add_middleware(RequestMonitoringMiddleware)
    app.add_middleware(CORSMiddleware, **get_cors_config())
    logger.info(f"CORS allowed origins: {settings.cors_origins}")
