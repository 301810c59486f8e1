from __future__ import annotations

from contextlib import asynccontextmanager

from fastapi import FastAPI

from payroll_auth.api.error_handling import register_exception_handlers
from payroll_auth.api.routes import router
from payroll_auth.logging import get_logger, set_correlation_id

logger = get_logger(__name__)

__version__ = "0.1.0"


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Open the token store on startup and close it on shutdown.

    The server delivers SIGTERM/SIGINT as a lifespan shutdown, so the Redis
    connection is always closed gracefully before the process exits.
    """
    from payroll_auth.service.runtime import get_runtime

    runtime = get_runtime()
    try:
        await runtime.start()
    except Exception as exc:
        logger.error("startup_failed", error=str(exc))

    yield

    try:
        await runtime.close()
        logger.info("runtime_cleanup_complete")
    except Exception as exc:
        logger.error("shutdown_failed", error=str(exc))


app = FastAPI(title="Payroll Auth", version=__version__, lifespan=lifespan)


@app.middleware("http")
async def add_correlation_id(request, call_next):
    """Tag every request with an X-Request-ID for log correlation."""
    client_request_id = request.headers.get("X-Request-ID")
    correlation_id = set_correlation_id(client_request_id)
    response = await call_next(request)
    response.headers["X-Request-ID"] = correlation_id
    return response


register_exception_handlers(app)
app.include_router(router)
