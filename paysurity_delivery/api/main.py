"""
Main FastAPI application.

Delivery dispatch API with:
- CORS configuration
- Error handling
- Request ID tracking
- Structured logging
- Prometheus metrics
"""
import time
import uuid
from contextlib import asynccontextmanager
from typing import Any, AsyncGenerator

import structlog
from fastapi import FastAPI, Request, Response, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from paysurity_delivery import __version__
from paysurity_delivery.config import get_settings
from paysurity_delivery.core.exceptions import DeliveryError
from paysurity_delivery.monitoring.logging import (
    bind_request_context,
    is_test_mode,
    setup_logging,
)

from .routes import delivery_router, get_delivery_service, monitoring_router, webhook_router

# Setup logging first
setup_logging()
logger = structlog.get_logger(__name__)

settings = get_settings()


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, Any]:
    """
    Application lifespan manager.

    Loads delivery providers on startup and closes their HTTP clients on shutdown.
    """
    logger.info("application_startup", app_name=settings.app_name, env=settings.app_env)

    service = get_delivery_service()
    try:
        await service.initialize()
        logger.info("delivery_service_ready", providers=len(service.get_all_providers()))
    except DeliveryError as e:
        logger.error("delivery_service_startup_failed", error=str(e))
        raise

    yield

    logger.info("application_shutdown")
    await service.close()


app = FastAPI(
    title="PaySurity Delivery",
    description=(
        "Delivery dispatch for restaurants: quotes across in-house staff and third-party "
        "couriers, order tracking, status webhooks and delivery history."
    ),
    version=__version__,
    lifespan=lifespan,
    docs_url="/docs",
    redoc_url="/redoc",
    openapi_url="/openapi.json",
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.get_allowed_origins_list(),
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.middleware("http")
async def add_request_id_middleware(request: Request, call_next: Any) -> Response:
    """
    Add request ID to all requests for tracing.

    Requests carrying the test-mode header are tagged in the log context.
    """
    request_id = str(uuid.uuid4())
    start_time = time.time()

    bind_request_context(
        request_id=request_id,
        method=request.method,
        path=request.url.path,
        test_mode=is_test_mode(request.headers.get(settings.test_mode_header)),
    )

    logger.info(
        "request_started",
        request_id=request_id,
        client_host=request.client.host if request.client else None,
    )

    try:
        response = await call_next(request)
        response.headers["X-Request-ID"] = request_id
        logger.info(
            "request_completed",
            request_id=request_id,
            status_code=response.status_code,
            duration_seconds=time.time() - start_time,
        )
        return response

    except Exception as e:
        logger.error(
            "request_failed",
            request_id=request_id,
            error=str(e),
            duration_seconds=time.time() - start_time,
        )
        raise

    finally:
        structlog.contextvars.clear_contextvars()


@app.exception_handler(DeliveryError)
async def delivery_exception_handler(request: Request, exc: DeliveryError) -> JSONResponse:
    """Map delivery errors that escape a route to their HTTP status."""
    logger.warning(
        "delivery_error",
        error=exc.message,
        error_code=exc.error_code,
        path=request.url.path,
    )
    return JSONResponse(status_code=exc.http_status, content=exc.to_dict())


@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """
    Global exception handler for unhandled exceptions.
    """
    logger.error(
        "unhandled_exception",
        error=str(exc),
        error_type=type(exc).__name__,
        path=request.url.path,
    )

    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content={
            "error": "Internal server error",
            "message": "An unexpected error occurred. Please try again later.",
        },
    )


app.include_router(delivery_router)
app.include_router(webhook_router)
app.include_router(monitoring_router)


@app.get("/", tags=["root"])
async def root() -> dict:
    """Root endpoint with API information."""
    return {
        "service": settings.app_name,
        "version": __version__,
        "status": "operational",
        "environment": settings.app_env,
        "docs": "/docs",
        "health": "/health",
        "metrics": "/metrics",
    }


def run() -> None:
    """Run the API with uvicorn."""
    import uvicorn

    uvicorn.run(
        "paysurity_delivery.api.main:app",
        host=settings.api_host,
        port=settings.api_port,
        reload=settings.debug,
        log_level=settings.log_level.lower(),
    )


if __name__ == "__main__":
    run()
