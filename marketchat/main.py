"""
Main FastAPI application entry point.
"""
from contextlib import asynccontextmanager

import structlog
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from marketchat import __version__
from marketchat.api import api_router
from marketchat.core.config import settings
from marketchat.core.exceptions import ChatError
from marketchat.core.logging import setup_logging
from marketchat.db.session import engine
from marketchat.middleware import RequestIdMiddleware
from marketchat.services.realtime import get_realtime_hub, reset_realtime_hub

# Setup logging
setup_logging()
logger = structlog.get_logger()


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Application lifespan handler.

    Creates the realtime hub on startup; on shutdown stops typing timers,
    waits for in-flight fanout, and closes external clients and the pool.
    """
    logger.info(
        "app_starting",
        app=settings.app_name,
        version=__version__,
        debug=settings.api_debug,
        notifications_enabled=settings.notifications_enabled,
        transaction_service=bool(settings.transaction_service_url),
    )
    get_realtime_hub()

    yield

    logger.info("app_stopping")
    await reset_realtime_hub()
    await engine.dispose()


# Create FastAPI application
app = FastAPI(
    title=settings.app_name,
    description="Marketplace chat - buyer/vendor conversations, live delivery and price negotiation",
    version=__version__,
    docs_url="/docs",
    redoc_url="/redoc",
    openapi_url="/openapi.json",
    lifespan=lifespan,
)

# Configure CORS
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.add_middleware(RequestIdMiddleware)


@app.exception_handler(ChatError)
async def chat_error_handler(request: Request, exc: ChatError):
    """Map core errors to their HTTP status with a stable error code."""
    logger.info(
        "request_rejected",
        path=request.url.path,
        method=request.method,
        code=exc.code,
        detail=exc.message,
    )
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


# Global exception handler
@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    """Handle unhandled exceptions."""
    from sqlalchemy.exc import TimeoutError as SQLTimeoutError

    error_str = str(exc)
    is_pool_error = isinstance(exc, SQLTimeoutError) or "QueuePool" in error_str

    logger.error(
        "unhandled_exception",
        path=request.url.path,
        method=request.method,
        error=error_str,
        error_type=type(exc).__name__,
        is_pool_error=is_pool_error,
    )

    if is_pool_error:
        return JSONResponse(
            status_code=503,
            content={
                "detail": "Service temporarily unavailable due to high load. Please try again in a moment.",
                "error_type": "connection_pool_exhausted",
            },
        )

    return JSONResponse(
        status_code=500,
        content={"detail": "Internal server error"},
    )


# Include API routes with /api prefix
app.include_router(api_router, prefix="/api")


# Middleware for request logging
@app.middleware("http")
async def log_requests(request: Request, call_next):
    """Log all requests."""
    logger.debug(
        "request",
        method=request.method,
        path=request.url.path,
    )
    response = await call_next(request)
    logger.debug(
        "response",
        method=request.method,
        path=request.url.path,
        status=response.status_code,
    )
    return response


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "marketchat.main:app",
        host=settings.api_host,
        port=settings.api_port,
        reload=settings.api_debug,
    )
