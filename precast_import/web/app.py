"""FastAPI application for precast element-type import jobs."""

from __future__ import annotations

from contextlib import asynccontextmanager
from uuid import uuid4

import structlog
from fastapi import FastAPI, Request
from starlette.middleware.base import BaseHTTPMiddleware

from precast_import import __version__
from precast_import.core.logging import configure_logging
from precast_import.importing.types import ShutdownTimeoutError
from precast_import.web.dependencies import get_job_manager
from precast_import.web.routes import jobs

# Initialize structured logging
configure_logging()
logger = structlog.get_logger()


@asynccontextmanager
async def lifespan(app: FastAPI):
    yield
    try:
        await get_job_manager().graceful_shutdown()
    except ShutdownTimeoutError as exc:
        logger.warning("shutdown_timeout", error=str(exc))


app = FastAPI(
    title="Precast Import Service",
    description="Background import of precast element types from Excel workbooks",
    version=__version__,
    docs_url="/docs",
    redoc_url="/redoc",
    lifespan=lifespan,
)


# Request Logging Middleware
class RequestLoggingMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next):
        structlog.contextvars.clear_contextvars()

        request_id = request.headers.get("X-Request-ID", str(uuid4()))
        structlog.contextvars.bind_contextvars(request_id=request_id)

        logger.info(
            "request_started",
            method=request.method,
            path=request.url.path,
            client_ip=request.client.host if request.client else None,
        )

        try:
            response = await call_next(request)
            logger.info("request_completed", status_code=response.status_code)
            response.headers["X-Request-ID"] = request_id
            return response
        except Exception as exc:
            logger.error("request_failed", error=str(exc))
            raise


app.add_middleware(RequestLoggingMiddleware)

# Include Routers
app.include_router(jobs.router)


@app.get("/health")
async def health():
    return {"status": "ok"}
