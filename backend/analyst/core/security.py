"""
Security middleware and startup checks.
"""
import os
import logging
from fastapi import Request
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.responses import Response

from analyst.core.config import Settings

logger = logging.getLogger(__name__)


# The API only ever returns JSON, so nothing needs to load from it
DEFAULT_CSP = {
    "default-src": "'none'",
    "frame-ancestors": "'none'",
    "base-uri": "'none'",
    "form-action": "'none'",
}


def build_csp_header(csp_dict: dict) -> str:
    """Build CSP header string from dictionary."""
    return "; ".join(f"{key} {value}" for key, value in csp_dict.items())


class SecurityHeadersMiddleware(BaseHTTPMiddleware):
    """Add security headers to all responses."""

    def __init__(self, app, csp_overrides: dict = None):
        super().__init__(app)
        csp = DEFAULT_CSP.copy()
        if csp_overrides:
            csp.update(csp_overrides)
        self.csp_header = build_csp_header(csp)

    async def dispatch(self, request: Request, call_next) -> Response:
        response = await call_next(request)
        response.headers["Content-Security-Policy"] = self.csp_header
        response.headers["X-Content-Type-Options"] = "nosniff"
        response.headers["X-Frame-Options"] = "DENY"
        response.headers["Referrer-Policy"] = "no-referrer"
        response.headers["Cache-Control"] = "no-store"
        return response


def validate_production_security(settings: Settings) -> None:
    """
    Validate configuration for production.

    Raises RuntimeError if a production deployment would lose sessions
    between workers or could not reach any AI provider.
    """
    env = os.getenv('ENVIRONMENT', 'development').lower()

    if env not in ('production', 'prod'):
        logger.info(f"Running in {env} mode - production checks skipped")
        return

    if settings.storage_backend != 'redis':
        raise RuntimeError(
            "STORAGE_BACKEND=redis is required in production so sessions survive across workers."
        )
    if not settings.ai_configured:
        raise RuntimeError("GROQ_API_KEY or GEMINI_API_KEY is required in production.")
    if any('localhost' in origin for origin in settings.allowed_origins_list):
        logger.warning(
            "ALLOWED_ORIGINS contains 'localhost' in production. Consider removing for security."
        )

    logger.info("Production security validation passed")
