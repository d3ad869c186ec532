import logging
from contextlib import asynccontextmanager
from datetime import datetime, timezone

from fastapi import FastAPI, Request, status
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from capgate.api.v1 import api_router
from capgate.core.config import settings
from capgate.core.logging_config import RequestLoggingMiddleware, setup_logging
from capgate.db.session import check_db_connection

# Configure structured logging (JSON in production, colored in development)
setup_logging()
logger = logging.getLogger("capgate")


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
    capabilities: int


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Build the capability service on startup, release DB connections on shutdown."""
    from capgate.db.session import get_engine
    from capgate.services.capabilities.service import build_capability_service

    logger.info("Application starting up...")
    if getattr(app.state, "capability_service", None) is None:
        app.state.capability_service = build_capability_service(settings)
    logger.info(f"Application startup complete: {len(app.state.capability_service.registry)} capabilities")

    try:
        yield
    finally:
        logger.info("Application shutting down...")
        await get_engine().dispose()
        logger.info("Database connections closed")


app = FastAPI(
    title="Capability Gateway API",
    description="Role-checked, schema-validated capability execution for AI agents",
    version="1.0.0",
    docs_url="/docs" if settings.DEBUG else None,
    redoc_url="/redoc" if settings.DEBUG else None,
    lifespan=lifespan,
)


@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """
    Global exception handler that returns consistent error responses.
    In production, internal details are hidden.
    """
    error_id = datetime.now(timezone.utc).strftime("%Y%m%d%H%M%S%f")
    logger.exception(f"Unhandled exception [{error_id}] on {request.method} {request.url.path}: {exc}")

    if settings.IS_PRODUCTION:
        detail = f"An unexpected error occurred. Reference ID: {error_id}"
        error = "Internal server error"
    else:
        detail = str(exc)
        error = exc.__class__.__name__

    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content=ErrorResponse(
            error=error,
            detail=detail,
            timestamp=datetime.now(timezone.utc).isoformat(),
            path=request.url.path,
        ).model_dump(),
    )


# Request logging middleware with timing and request IDs
app.add_middleware(RequestLoggingMiddleware)

app.include_router(api_router, prefix=settings.API_V1_STR)


@app.get("/health", response_model=HealthResponse)
async def health_check(request: Request):
    """
    Returns 503 when the database is unreachable.
    """
    db_healthy = await check_db_connection()
    service = getattr(request.app.state, "capability_service", None)

    response = HealthResponse(
        status="healthy" if db_healthy else "unhealthy",
        service="capgate",
        version="1.0.0",
        environment=settings.ENVIRONMENT,
        checks={"database": db_healthy, "capabilities": service is not None},
        capabilities=len(service.registry) if service is not None else 0,
    )

    if not db_healthy:
        logger.warning(f"Health check failed: {response.checks}")
        return JSONResponse(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            content=response.model_dump(),
        )
    return response


@app.get("/")
async def root():
    return {"message": f"Welcome to the {settings.PROJECT_NAME} API"}
