from __future__ import annotations

from contextlib import asynccontextmanager

from fastapi import FastAPI

from gatekeep.api.error_handling import register_exception_handlers
from gatekeep.api.routes import router
from gatekeep.logging import get_logger, set_correlation_id

logger = get_logger(__name__)

__version__ = "0.1.0"

_MAX_REQUEST_ID_LENGTH = 128


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Build the runtime on startup and release its pools on shutdown."""
    from gatekeep.service.runtime import get_runtime

    runtime = get_runtime()
    logger.info("app_started", version=__version__)

    yield

    try:
        await runtime.close()
        logger.info("runtime_cleanup_complete")
    except Exception as exc:
        logger.error("shutdown_failed", error=str(exc))


app = FastAPI(title="gatekeep", version=__version__, lifespan=lifespan)


@app.middleware("http")
async def add_correlation_id(request, call_next):
    """Tag each request with a correlation ID for log tracing.

    The ID comes from the client's ``X-Request-ID`` header when present,
    otherwise a new UUID, and is echoed back in the response header.
    """
    client_request_id = request.headers.get("X-Request-ID")
    if client_request_id and len(client_request_id) > _MAX_REQUEST_ID_LENGTH:
        client_request_id = None
    correlation_id = set_correlation_id(client_request_id)
    response = await call_next(request)
    response.headers["X-Request-ID"] = correlation_id
    return response


register_exception_handlers(app)
app.include_router(router)
