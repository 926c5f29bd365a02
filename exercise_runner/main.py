"""
Exercise Runner - Main Application Entry Point.

Runs user-submitted Python against an isolated interpreter worker or a
remote container sandbox, and grades submissions against their tests.
"""

from contextlib import asynccontextmanager
from typing import AsyncGenerator

import structlog
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from exercise_runner.api import executions_router, sessions_router, submissions_router
from exercise_runner.config import get_settings
from exercise_runner.sandbox.errors import ExecutionError
from exercise_runner.services import runner_lifespan

settings = get_settings()

# Configure structured logging
structlog.configure(
    processors=[
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.JSONRenderer() if settings.environment == "production"
        else structlog.dev.ConsoleRenderer()
    ],
    wrapper_class=structlog.make_filtering_bound_logger(
        0 if settings.debug else 20
    )
)

logger = structlog.get_logger()

# HTTP status per execution error code
ERROR_STATUS = {
    "VALIDATION_ERROR": 422,
    "EXECUTION_TIMEOUT": 408,
    "EXECUTION_CANCELED": 409,
    "BACKEND_UNAVAILABLE": 503,
    "SANDBOX_UNAVAILABLE": 503,
    "RUNTIME_FAULT": 502,
    "SANDBOX_TRANSPORT": 502,
}


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Application lifespan manager."""
    async with runner_lifespan(app):
        yield


# Create FastAPI application
app = FastAPI(
    title="Exercise Runner",
    description="""
Execution orchestration and automated test running for coding exercises.

## Features

- **Two backends**: isolated in-process interpreter worker, ephemeral remote sandbox
- **Admission control**: per-session FIFO queue, hard timeouts with guaranteed teardown
- **Grading**: per-test harnesses with nonce-tagged verdict lines

## Usage

1. Run code via `POST /api/v1/sessions/{session_id}/executions`
2. Grade a submission via `POST /api/v1/sessions/{session_id}/submissions`
3. Browse stored results via `GET /api/v1/submissions`
    """,
    version=settings.app_version,
    docs_url="/docs",
    redoc_url="/redoc",
    lifespan=lifespan
)

# CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.server.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# Exception handlers
@app.exception_handler(ExecutionError)
async def execution_error_handler(request: Request, exc: ExecutionError) -> JSONResponse:
    """Map execution-layer errors to HTTP responses."""
    status_code = ERROR_STATUS.get(exc.code, 500)
    logger.info(
        "Execution request failed",
        path=request.url.path,
        code=exc.code,
        error=exc.message,
    )
    return JSONResponse(
        status_code=status_code,
        content={
            "error": exc.message,
            "code": exc.code,
            "details": {"request_id": exc.request_id} if exc.request_id else None
        }
    )


@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Global exception handler."""
    logger.error(
        "Unhandled exception",
        path=request.url.path,
        method=request.method,
        error=str(exc),
        exc_info=True
    )
    return JSONResponse(
        status_code=500,
        content={
            "error": "Internal server error",
            "code": "INTERNAL_ERROR",
            "details": str(exc) if settings.debug else None
        }
    )


# Include routers
app.include_router(sessions_router, prefix="/api/v1")
app.include_router(executions_router, prefix="/api/v1")
app.include_router(submissions_router, prefix="/api/v1")


# Health check endpoint
@app.get("/health", tags=["health"])
async def health_check() -> dict:
    """Health check endpoint."""
    return {
        "status": "healthy",
        "version": settings.app_version,
        "environment": settings.environment
    }


# Root endpoint
@app.get("/", tags=["root"])
async def root() -> dict:
    """Root endpoint with API information."""
    return {
        "name": settings.app_name,
        "version": settings.app_version,
        "docs": "/docs",
        "health": "/health"
    }


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "exercise_runner.main:app",
        host=settings.server.host,
        port=settings.server.port,
        workers=settings.server.workers,
        reload=settings.debug
    )
