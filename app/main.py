"""
FastAPI Application Entry Point

This module sets up the FastAPI application with middleware, routing,
exception mapping and monitoring endpoints for the Rescue Dispatch engine.
"""

import logging
import time
import uuid
from contextlib import asynccontextmanager
from datetime import datetime, timezone

import structlog
import uvicorn
from fastapi import FastAPI, Request, Response, status
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest

from app.api.v1.api import api_router
from app.core.config import settings, setup_logging
from app.core.exceptions import ErrorKind, RescueDispatchException, format_exception_for_logging
from app.core.metrics import ENGINE_ERRORS, REQUEST_COUNT, REQUEST_DURATION
from app.core.security import get_security_headers
from app.models.database import check_database_health, create_tables, engine

# =============================================================================
# Application Lifespan Management
# =============================================================================

@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Application lifespan manager.

    Handles startup and shutdown events for proper resource management.
    """
    # Setup logging early before any logger usage
    setup_logging()
    # Bind global context to all logs
    structlog.contextvars.bind_contextvars(
        app=settings.APP_NAME,
        environment=settings.ENVIRONMENT,
        version=settings.APP_VERSION,
    )
    logger = structlog.get_logger(__name__)

    # Startup
    logger.info("Starting Rescue Dispatch application", version=settings.APP_VERSION, environment=settings.ENVIRONMENT)
    logger.info("Logging configured", log_level=settings.LOG_LEVEL, log_format=settings.LOG_FORMAT)

    # Initialize database
    try:
        await create_tables()
        logger.info("Database tables initialized")

        db_health = await check_database_health()
        if db_health["status"] == "healthy":
            logger.info("Database connection verified", **db_health)
        else:
            logger.error("Database health check failed", **db_health)

    except Exception as e:
        logger.error("Database initialization failed", error=str(e))
        raise

    logger.info(
        "Application startup completed successfully",
        environment=settings.ENVIRONMENT,
        debug=settings.DEBUG
    )

    yield

    # Shutdown
    logger.info("Shutting down Rescue Dispatch application")
    await engine.dispose()
    logger.info("Database engine disposed")


# =============================================================================
# FastAPI Application Setup
# =============================================================================

app = FastAPI(
    title=settings.APP_NAME,
    version=settings.APP_VERSION,
    description=settings.APP_DESCRIPTION,
    openapi_url=f"{settings.API_V1_PREFIX}/openapi.json" if settings.SHOW_DOCS else None,
    docs_url="/docs" if settings.SHOW_DOCS else None,
    redoc_url="/redoc" if settings.SHOW_DOCS else None,
    lifespan=lifespan,
)

# CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
    expose_headers=["X-Request-ID"],
)

app.include_router(api_router, prefix=settings.API_V1_PREFIX)

# =============================================================================
# Request/Response Middleware
# =============================================================================

def route_template(request: Request) -> str:
    """Matched route path such as /api/v1/missions/{mission_id}, keeping metric labels bounded."""
    route = request.scope.get("route")
    return getattr(route, "path", None) or "unmatched"


@app.middleware("http")
async def request_logging_middleware(request: Request, call_next):
    """
    Log all requests and add request ID for tracing.
    """
    request_id = request.headers.get("X-Request-ID") or str(uuid.uuid4())[:8]
    request.state.request_id = request_id

    structlog.contextvars.clear_contextvars()
    structlog.contextvars.bind_contextvars(request_id=request_id)

    logger = structlog.get_logger(__name__).bind(
        method=request.method,
        path=request.url.path,
    )

    start_time = time.time()
    logger.info("Incoming request")

    try:
        response = await call_next(request)

        duration = time.time() - start_time

        REQUEST_COUNT.labels(
            method=request.method,
            endpoint=route_template(request),
            status_code=response.status_code
        ).inc()

        REQUEST_DURATION.labels(
            method=request.method,
            endpoint=route_template(request)
        ).observe(duration)

        response.headers["X-Request-ID"] = request_id
        response.headers["X-Response-Time"] = f"{duration:.3f}s"
        for header, value in get_security_headers().items():
            response.headers.setdefault(header, value)

        logger.info(
            "Request completed",
            status_code=response.status_code,
            duration=f"{duration:.3f}s"
        )

        return response

    except Exception as exc:
        duration = time.time() - start_time

        logger.error(
            "Request failed",
            error=str(exc),
            duration=f"{duration:.3f}s",
            exc_info=True
        )

        REQUEST_COUNT.labels(
            method=request.method,
            endpoint=route_template(request),
            status_code=500
        ).inc()

        raise


# =============================================================================
# Exception Handlers
# =============================================================================

def _error_body(request: Request, error_code: str, message: str, **extra):
    body = {
        "error": True,
        "error_code": error_code,
        "message": message,
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "request_id": getattr(request.state, "request_id", None),
    }
    body.update(extra)
    return body


@app.exception_handler(RescueDispatchException)
async def engine_exception_handler(request: Request, exc: RescueDispatchException):
    """Map typed engine errors to JSON responses."""
    logger = structlog.get_logger(__name__)

    ENGINE_ERRORS.labels(kind=exc.kind.value, error_code=exc.error_code).inc()

    if exc.kind == ErrorKind.CONFLICT:
        logger.warning("Concurrent modification", **format_exception_for_logging(exc))
    else:
        logger.info("Engine error", **format_exception_for_logging(exc))

    return JSONResponse(
        status_code=exc.status_code,
        content=_error_body(
            request,
            exc.error_code,
            exc.message,
            kind=exc.kind.value,
            details=exc.details,
        ),
    )


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError):
    """Handle Pydantic validation errors."""
    logger = structlog.get_logger(__name__)

    logger.warning("Validation error", errors=exc.errors())

    return JSONResponse(
        status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
        content=_error_body(
            request,
            "VALIDATION_ERROR",
            "Input validation failed",
            kind=ErrorKind.VALIDATION_FAILED.value,
            details=jsonable_errors(exc),
        ),
    )


def jsonable_errors(exc: RequestValidationError):
    # ctx may carry exception instances
    return [
        {key: value for key, value in error.items() if key in ("type", "loc", "msg")}
        for error in exc.errors()
    ]


# =============================================================================
# Health Check and Monitoring Endpoints
# =============================================================================

@app.get(settings.HEALTH_CHECK_PATH)
async def health_check():
    """
    Application health check endpoint.
    """
    health_data = {
        "status": "healthy",
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "version": settings.APP_VERSION,
        "environment": settings.ENVIRONMENT,
        "services": {
            "database": await check_database_health(),
        },
    }

    if health_data["services"]["database"]["status"] != "healthy":
        health_data["status"] = "unhealthy"

    status_code = 200 if health_data["status"] == "healthy" else 503
    return JSONResponse(content=health_data, status_code=status_code)


@app.get("/metrics")
async def metrics():
    """Prometheus metrics endpoint."""
    if not settings.METRICS_ENABLED:
        return Response(status_code=404)
    return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)


@app.get("/")
async def root():
    """API root endpoint with basic information."""
    return {
        "message": "Rescue Dispatch API",
        "version": settings.APP_VERSION,
        "docs_url": "/docs" if settings.SHOW_DOCS else None,
        "health_url": settings.HEALTH_CHECK_PATH,
        "api_prefix": settings.API_V1_PREFIX,
        "environment": settings.ENVIRONMENT,
        "status": "running",
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }


# =============================================================================
# Application Factory
# =============================================================================

def create_app() -> FastAPI:
    """
    Application factory function.

    Returns:
        Configured FastAPI application instance
    """
    return app


if __name__ == "__main__":
    """
    Run the application directly for development.

    For production, use: uvicorn app.main:app --host 0.0.0.0 --port 8000
    """
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
    )

    uvicorn.run(
        "app.main:app",
        host="127.0.0.1",
        port=8000,
        reload=settings.is_development,
        log_level=settings.LOG_LEVEL.lower(),
        access_log=not settings.is_production,
        server_header=False,
    )
