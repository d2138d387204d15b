"""
Dashboard API application: lifespan, middleware and routers.
"""

import asyncio
import time
from collections.abc import AsyncIterator, Awaitable, Callable
from contextlib import asynccontextmanager
from uuid import uuid4

from fastapi import FastAPI, Request, Response
from fastapi.exception_handlers import request_validation_exception_handler
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import PlainTextResponse
from prometheus_client import generate_latest

from app.api.assistant_routes import router as assistant_router
from app.api.billing_routes import router as billing_router
from app.api.routes import router
from app.api.team_routes import router as team_router
from app.config import settings
from app.db.migration_runner import run_migrations
from app.db.session import close_engines
from app.observability import get_logger, log_context, metrics, setup_logging, setup_tracing
from app.observability.tracing import instrument_fastapi

setup_logging()
logger = get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Apply pending migrations on startup; dispose engines on shutdown."""
    logger.info(
        "application_starting",
        service=settings.api_title,
        version=settings.api_version,
        tracing_enabled=settings.tracing_enabled,
        metrics_enabled=settings.metrics_enabled,
    )
    # Alembic is synchronous
    await asyncio.to_thread(run_migrations)

    yield

    logger.info("application_shutting_down")
    await close_engines()


app = FastAPI(
    title=settings.api_title,
    version=settings.api_version,
    description=settings.api_description,
    lifespan=lifespan,
)


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError) -> Response:
    """Log rejected requests, then answer with FastAPI's standard 422 body."""
    logger.warning(
        "validation_error",
        fields=[".".join(str(part) for part in error.get("loc", ())) for error in exc.errors()],
    )
    return await request_validation_exception_handler(request, exc)


setup_tracing()
instrument_fastapi(app)

# The dashboard frontend is served from SITE_URL
app.add_middleware(
    CORSMiddleware,
    allow_origins=[settings.site_url],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.middleware("http")
async def logging_middleware(
    request: Request, call_next: Callable[[Request], Awaitable[Response]]
) -> Response:
    """
    Log each request with timing.

    request_id, method and path are bound to the structlog context, so every
    log line written while handling the request carries them.
    """
    start_time = time.time()
    request_id = request.headers.get("X-Request-ID") or str(uuid4())
    endpoint = request.url.path
    method = request.method

    with log_context(request_id=request_id, method=method, path=endpoint):
        logger.info("request_started")
        metrics.http_requests_in_progress.labels(endpoint=endpoint, method=method).inc()
        try:
            response = await call_next(request)
        except Exception as e:
            duration = time.time() - start_time
            metrics.record_http_request(endpoint, method, 500, duration)
            metrics.record_error(type(e).__name__, "http_request")
            logger.error(
                "request_failed", error=str(e), duration_seconds=duration, exc_info=True
            )
            raise
        finally:
            metrics.http_requests_in_progress.labels(endpoint=endpoint, method=method).dec()

        duration = time.time() - start_time
        metrics.record_http_request(endpoint, method, response.status_code, duration)
        logger.info(
            "request_completed",
            status_code=response.status_code,
            duration_seconds=duration,
        )

    response.headers["X-Request-ID"] = request_id
    return response


app.include_router(router)
app.include_router(team_router)
app.include_router(assistant_router)
app.include_router(billing_router)


@app.get("/")
async def root() -> dict[str, str]:
    """Service name and version."""
    return {
        "service": settings.api_title,
        "version": settings.api_version,
        "status": "running",
    }


@app.get("/metrics")
async def metrics_endpoint() -> Response:
    """Prometheus text exposition."""
    return PlainTextResponse(generate_latest())


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "app.main:app",
        host=settings.api_host,
        port=settings.api_port,
        reload=True,
        log_level=settings.log_level.lower(),
    )
