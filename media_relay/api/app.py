"""FastAPI application factory."""

import asyncio
import math
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request, Response
from fastapi.responses import JSONResponse
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest
from starlette import status

from media_relay import __version__
from media_relay.api.middleware import CorrelationMiddleware
from media_relay.api.routes import files_router, router
from media_relay.core.errors import (
    DeferredError,
    MediaRelayError,
    RateLimitError,
    StaleResourceError,
    ThrottledError,
    UpstreamFetchError,
    ValidationError,
)
from media_relay.core.logging import get_logger
from media_relay.pipeline import Runtime

logger = get_logger()

API_PREFIX = "/api/v1"


def _status_for(error: MediaRelayError) -> int:
    if isinstance(error, ValidationError):
        return status.HTTP_422_UNPROCESSABLE_ENTITY
    if isinstance(error, DeferredError):
        return status.HTTP_202_ACCEPTED
    if isinstance(error, (RateLimitError, ThrottledError)):
        return status.HTTP_429_TOO_MANY_REQUESTS
    if isinstance(error, StaleResourceError):
        return status.HTTP_410_GONE
    if isinstance(error, UpstreamFetchError):
        return status.HTTP_502_BAD_GATEWAY
    return status.HTTP_500_INTERNAL_SERVER_ERROR


async def handle_media_relay_error(request: Request, exc: MediaRelayError) -> JSONResponse:
    """Render a MediaRelayError with its user-facing message."""
    status_code = _status_for(exc)
    headers = {}
    if isinstance(exc, (RateLimitError, ThrottledError)) and exc.retry_after:
        headers["Retry-After"] = str(max(math.ceil(exc.retry_after), 1))
    logger.warning(
        "request_failed",
        error_type=type(exc).__name__,
        error=exc.message,
        status_code=status_code,
    )
    content = {
        "error": type(exc).__name__,
        "message": exc.user_message,
        "status_code": status_code,
        "correlation_id": getattr(request.state, "correlation_id", "unknown"),
    }
    if isinstance(exc, DeferredError):
        content["deferred_id"] = exc.request_id
    return JSONResponse(status_code=status_code, content=content, headers=headers)


def create_app(runtime: Runtime) -> FastAPI:
    """Create the HTTP app around an already wired runtime."""

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        tasks = [asyncio.create_task(runtime.sweeper.run())]
        logger.info("stuck_sweep_started", interval=runtime.sweeper.interval_seconds)
        if runtime.deferred_queue is not None:
            tasks.append(asyncio.create_task(runtime.deferred_queue.run()))
            logger.info(
                "deferred_queue_started", interval=runtime.deferred_queue.interval_seconds
            )
        try:
            yield
        finally:
            runtime.sweeper.stop()
            if runtime.deferred_queue is not None:
                runtime.deferred_queue.stop()
            await asyncio.gather(*tasks)
            await runtime.close()

    app = FastAPI(
        title="media-relay",
        description="Media ingest with request coalescing and content-addressed storage",
        version=__version__,
        lifespan=lifespan,
    )
    app.state.runtime = runtime
    app.add_middleware(CorrelationMiddleware)
    app.exception_handler(MediaRelayError)(handle_media_relay_error)

    @app.get("/health")
    async def health() -> dict[str, object]:
        return {
            "status": "healthy",
            "version": __version__,
            "persistent": runtime.record_store is not None,
            "coalescer": runtime.coalescer.stats(),
            "deferred": (
                runtime.deferred_queue.stats() if runtime.deferred_queue is not None else None
            ),
        }

    @app.get("/metrics", include_in_schema=False)
    async def metrics() -> Response:
        """Expose Prometheus metrics."""
        return Response(generate_latest(), media_type=CONTENT_TYPE_LATEST)

    app.include_router(router, prefix=API_PREFIX)
    app.include_router(files_router)
    return app
