"""
Main FastAPI application.

Read-only query API for the engine with:
- Request ID tracking
- Structured logging
- Engine error mapping (not found -> 404, conflict -> 409)
- Health probes and Prometheus metrics
"""
import time
import uuid
from contextlib import asynccontextmanager
from typing import Any, AsyncGenerator

import structlog
from fastapi import FastAPI, Request, Response, status
from fastapi.responses import JSONResponse

from storebot import __version__
from storebot.config import get_settings
from storebot.core.errors import ConflictError, NotFoundError
from storebot.database import close_db, init_db
from storebot.monitoring.logging import bind_request_context, setup_logging

from .routes import monitoring_router, order_router, payment_router, stock_router

logger = structlog.get_logger(__name__)

settings = get_settings()


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, Any]:
    """
    Application lifespan manager.

    Handles startup and shutdown events.
    """
    setup_logging()
    logger.info("application_startup", app_name=settings.app_name, env=settings.app_env)

    try:
        await init_db()
        logger.info("database_initialized")
    except Exception as e:
        logger.error("database_initialization_failed", error=str(e))
        raise

    yield

    logger.info("application_shutdown")
    try:
        await close_db()
        logger.info("database_connections_closed")
    except Exception as e:
        logger.error("database_shutdown_error", error=str(e))


app = FastAPI(
    title="Store Bot Engine",
    description=(
        "Payment and stock consistency engine for the store bot. "
        "Exposes stock, order and payment queries plus health and metrics."
    ),
    version=__version__,
    lifespan=lifespan,
)


@app.middleware("http")
async def add_request_id_middleware(request: Request, call_next: Any) -> Response:
    """Add a request ID to every request and bind it to the log context."""
    request_id = request.headers.get("X-Request-ID") or str(uuid.uuid4())
    start_time = time.time()

    bind_request_context(request_id, request.method, request.url.path)

    try:
        response = await call_next(request)
        response.headers["X-Request-ID"] = request_id
        logger.info(
            "request_completed",
            status_code=response.status_code,
            duration_seconds=time.time() - start_time,
        )
        return response
    except Exception as e:
        logger.error(
            "request_failed",
            error=str(e),
            duration_seconds=time.time() - start_time,
        )
        raise
    finally:
        structlog.contextvars.clear_contextvars()


@app.exception_handler(NotFoundError)
async def not_found_handler(request: Request, exc: NotFoundError) -> JSONResponse:
    return JSONResponse(
        status_code=status.HTTP_404_NOT_FOUND,
        content={"error": "not_found", "message": str(exc)},
    )


@app.exception_handler(ConflictError)
async def conflict_handler(request: Request, exc: ConflictError) -> JSONResponse:
    return JSONResponse(
        status_code=status.HTTP_409_CONFLICT,
        content={"error": "conflict", "message": str(exc)},
    )


@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Global exception handler for unhandled exceptions."""
    logger.error(
        "unhandled_exception",
        error=str(exc),
        error_type=type(exc).__name__,
        path=request.url.path,
    )
    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content={
            "error": "internal_error",
            "message": "An unexpected error occurred. Please try again later.",
        },
    )


app.include_router(stock_router)
app.include_router(payment_router)
app.include_router(order_router)
app.include_router(monitoring_router)


@app.get("/", tags=["root"])
async def root() -> dict[str, Any]:
    """Root endpoint with API information."""
    return {
        "service": settings.app_name,
        "version": __version__,
        "environment": settings.app_env,
        "health": "/health",
        "metrics": "/metrics",
    }


def run() -> None:
    """Serve the API with uvicorn."""
    import uvicorn

    uvicorn.run(
        "storebot.api.main:app",
        host=settings.api_host,
        port=settings.api_port,
        reload=settings.debug,
        log_level=settings.log_level.lower(),
    )


if __name__ == "__main__":
    run()
