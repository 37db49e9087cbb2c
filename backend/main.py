import asyncio
import sys
import logging
from dotenv import load_dotenv
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.middleware.gzip import GZipMiddleware
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware
from slowapi import Limiter
from slowapi.util import get_remote_address
from slowapi.errors import RateLimitExceeded
from analyst.api.routes import router
from analyst.api.metrics import router as metrics_router
from analyst.core.config import get_settings
from analyst.core.errors import ErrorCodes, get_error_response
from analyst.core.logging import configure_logging
from analyst.core.middleware import CorrelationIDMiddleware
from analyst.core.security import SecurityHeadersMiddleware, validate_production_security

load_dotenv()

try:
    settings = get_settings()
except Exception as e:
    logging.basicConfig(level=logging.ERROR)
    logging.getLogger(__name__).error(f"Failed to load configuration: {e}")
    sys.exit(1)

configure_logging(settings.log_level)
logger = logging.getLogger(__name__)

limiter = Limiter(key_func=get_remote_address)

app = FastAPI(
    title="Conversational Data Analyst API",
    description="Upload a spreadsheet, get AI-planned analysis cards, and refine them in chat",
    version="1.0.0"
)

app.state.limiter = limiter
app.state.settings = settings
app.state.ai_client = None


def rate_limit_handler(request: Request, exc: RateLimitExceeded):
    """Handle rate limit exceeded with structured error response."""
    correlation_id = getattr(request.state, 'correlation_id', 'unknown')
    error_info = get_error_response(ErrorCodes.RATE_LIMIT_EXCEEDED)
    error_info['correlation_id'] = correlation_id
    return JSONResponse(
        status_code=429,
        content=error_info,
        headers={
            "Retry-After": str(getattr(exc, 'retry_after', 60)),
            "X-Correlation-ID": correlation_id
        }
    )


app.add_exception_handler(RateLimitExceeded, rate_limit_handler)


class TimeoutMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next):
        timeout = settings.request_timeout_seconds
        correlation_id = getattr(request.state, 'correlation_id', 'unknown')

        try:
            return await asyncio.wait_for(call_next(request), timeout=timeout)
        except asyncio.TimeoutError:
            logger.error(f"Request timeout after {timeout} seconds: {request.url.path}")
            error_info = get_error_response(ErrorCodes.TIMEOUT)
            error_info['correlation_id'] = correlation_id
            return JSONResponse(
                status_code=504,
                content=error_info,
                headers={"X-Correlation-ID": correlation_id}
            )


# Last added runs first
app.add_middleware(CorrelationIDMiddleware)
app.add_middleware(GZipMiddleware, minimum_size=1000)
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.allowed_origins_list,
    allow_credentials=True,
    allow_methods=["GET", "POST", "PATCH", "DELETE"],
    allow_headers=["Content-Type", "Authorization", "X-Correlation-ID"],
    expose_headers=["X-Correlation-ID"]
)
app.add_middleware(TimeoutMiddleware)
app.add_middleware(SecurityHeadersMiddleware)

validate_production_security(settings)

logger.info(f"CORS allowed origins: {settings.allowed_origins_list}")

app.include_router(router, prefix="/api")
app.include_router(metrics_router, prefix="/api")


@app.get("/")
async def root():
    return {"message": "Conversational Data Analyst API is running"}

logger.info("Application started successfully")
