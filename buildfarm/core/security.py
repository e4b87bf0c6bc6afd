"""
API key authentication middleware.
Supports both X-API-Key header and Authorization: Bearer token.

PUBLIC ROUTES (no auth required):
- /health, /meta - System endpoints
- /docs, /redoc, /openapi.json - API documentation

DOWNLOAD ROUTES (authorized in the route handler):
- /download/*, /build/download/* - API key OR signed download token

PROTECTED ROUTES (API key required):
- everything else (/build, /jobs/*, /metrics)
"""
import logging
from typing import Optional

from fastapi import Request
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware

from buildfarm.core.download_auth import constant_time_compare

logger = logging.getLogger(__name__)

PUBLIC_PATHS = frozenset([
    "/health",
    "/meta",
    "/docs",
    "/redoc",
    "/openapi.json",
])

# Download routes accept a signed token instead of the API key
DOWNLOAD_PREFIXES = (
    "/download/",
    "/build/download/",
)


def is_public_path(path: str) -> bool:
    """Check if a path skips the API key check."""
    if path in PUBLIC_PATHS:
        return True
    return path.startswith(DOWNLOAD_PREFIXES)


def extract_api_key(request: Request) -> Optional[str]:
    """API key from X-API-Key or Authorization: Bearer."""
    api_key = request.headers.get("X-API-Key")
    if not api_key:
        auth_header = request.headers.get("Authorization", "")
        if auth_header.startswith("Bearer "):
            api_key = auth_header[7:]
    return api_key or None


class APIKeyMiddleware(BaseHTTPMiddleware):
    """Enforce the worker API key on protected endpoints."""

    def __init__(self, app, api_key: Optional[str] = None):
        super().__init__(app)
        self.api_key = api_key

    async def dispatch(self, request: Request, call_next):
        path = request.url.path

        if is_public_path(path):
            return await call_next(request)

        api_key = extract_api_key(request)
        if not api_key:
            return JSONResponse(
                status_code=401,
                content={"detail": "Missing API key"}
            )

        if not self.api_key or not constant_time_compare(api_key, self.api_key):
            # Never log the presented key
            logger.warning(f"auth_failed path={path}")
            return JSONResponse(
                status_code=401,
                content={"detail": "Invalid API key"}
            )

        return await call_next(request)
