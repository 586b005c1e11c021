import logging
import traceback
from contextlib import asynccontextmanager
from datetime import datetime

from fastapi import FastAPI, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel
from slowapi.errors import RateLimitExceeded

from farmassist.api.v1 import api_router
from farmassist.core.config import settings
from farmassist.core.logging_config import RequestLoggingMiddleware, setup_logging
from farmassist.core.rate_limiter import create_rate_limiter, limiter, rate_limit_exceeded_handler
from farmassist.services.ai.llm_service import LLMService
from farmassist.services.progress_stream import ProgressStreamHub
from farmassist.services.tools.registry import tool_registry

# Configure structured logging (JSON in production, colored in development)
setup_logging()
logger = logging.getLogger("farmassist")


class ErrorResponse(BaseModel):
    """Standardized error response format."""
    error: str
    detail: str | None = None
    timestamp: str
    path: str | None = None


class HealthResponse(BaseModel):
    """Health check response format."""
    status: str
    service: str
    version: str
    environment: str
    checks: dict[str, bool]


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Create the services shared by all requests and release them on shutdown.

    Data-source integrations register their tools on `tool_registry` before
    the application starts serving.
    """
    logger.info("Application starting up...")
    rate_limiter = create_rate_limiter()

    app.state.tool_registry = tool_registry
    app.state.rate_limiter = rate_limiter
    app.state.llm_service = LLMService(rate_limiter=rate_limiter)
    app.state.progress_hub = ProgressStreamHub()

    providers = app.state.llm_service.get_available_providers()
    if providers:
        logger.info(f"LLM providers available: {', '.join(providers)}; {len(tool_registry)} tool(s) registered")
    else:
        logger.warning("No LLM providers configured; chat completions will fail until one is set up")

    logger.info("Application startup complete")
    try:
        yield
    finally:
        logger.info("Application shutting down...")
        await app.state.progress_hub.close()
        await rate_limiter.store.close()


app = FastAPI(
    title="FarmAssist API",
    description="Tool-calling farm assistant backend",
    version="1.0.0",
    docs_url="/docs" if settings.DEBUG else None,  # Disable docs in production
    redoc_url="/redoc" if settings.DEBUG else None,
    lifespan=lifespan,
)

# Add rate limiter to app state
app.state.limiter = limiter

# Register rate limit exceeded handler
app.add_exception_handler(RateLimitExceeded, rate_limit_exceeded_handler)

cors_origins = settings.ALLOWED_ORIGINS


def get_cors_headers(request: Request) -> dict:
    """Get CORS headers based on request origin."""
    origin = request.headers.get("origin", "")
    if origin in cors_origins:
        return {
            "Access-Control-Allow-Origin": origin,
            "Access-Control-Allow-Credentials": "true",
        }
    return {}


# Global exception handler - catches all unhandled exceptions
@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """
    Global exception handler that returns consistent error responses.
    In production, sensitive details are hidden to prevent information leakage.
    """
    error_id = datetime.utcnow().strftime("%Y%m%d%H%M%S%f")

    logger.error(
        f"Unhandled exception [{error_id}]: {exc}\n"
        f"Path: {request.url.path}\n"
        f"Method: {request.method}\n"
        f"Traceback: {traceback.format_exc()}"
    )

    headers = get_cors_headers(request)

    if settings.IS_PRODUCTION:
        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content=ErrorResponse(
                error="Internal server error",
                detail=f"An unexpected error occurred. Reference ID: {error_id}",
                timestamp=datetime.utcnow().isoformat(),
                path=request.url.path,
            ).model_dump(),
            headers=headers,
        )

    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content=ErrorResponse(
            error=exc.__class__.__name__,
            detail=str(exc),
            timestamp=datetime.utcnow().isoformat(),
            path=request.url.path,
        ).model_dump(),
        headers=headers,
    )


# When credentials are needed, we must specify exact origins (not "*")
app.add_middleware(
    CORSMiddleware,
    allow_origins=cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Request logging middleware with timing and request IDs
app.add_middleware(RequestLoggingMiddleware)

app.include_router(api_router, prefix=settings.API_V1_STR)


@app.get("/health", response_model=HealthResponse)
async def health_check(request: Request):
    """Liveness check. Reports whether at least one LLM provider is configured."""
    llm_service = getattr(request.app.state, "llm_service", None)
    checks = {
        "llm_provider": bool(llm_service and llm_service.get_available_providers()),
    }
    return HealthResponse(
        status="healthy" if all(checks.values()) else "degraded",
        service="farmassist-backend",
        version="1.0.0",
        environment=settings.ENVIRONMENT,
        checks=checks,
    )


@app.get("/")
async def root():
    return {"message": "Welcome to the FarmAssist API"}
