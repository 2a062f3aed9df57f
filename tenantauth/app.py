from __future__ import annotations

from contextlib import asynccontextmanager

from fastapi import FastAPI

from tenantauth.api.error_handling import register_exception_handlers
from tenantauth.api.routes import router
from tenantauth.logging import get_logger, set_correlation_id

logger = get_logger(__name__)

__version__ = "0.1.0"


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Build the runtime on startup so a bad signing secret stops the process."""
    from tenantauth.service.runtime import get_runtime

    runtime = get_runtime()
    logger.info("startup_complete", app_env=runtime.settings.app_env)

    yield

    try:
        await get_runtime().close()
        logger.info("runtime_cleanup_complete")
    except Exception as exc:
        logger.error("shutdown_failed", error=str(exc))


app = FastAPI(title="Tenant Auth Gateway", version=__version__, lifespan=lifespan)


@app.middleware("http")
async def add_correlation_id(request, call_next):
    """Tag every request with a correlation id, honouring X-Request-ID from the client."""
    client_request_id = request.headers.get("X-Request-ID")
    correlation_id = set_correlation_id(client_request_id)
    response = await call_next(request)
    response.headers["X-Request-ID"] = correlation_id
    return response


register_exception_handlers(app)
app.include_router(router)
