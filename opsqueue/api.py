from fastapi import FastAPI, HTTPException

from opsqueue.config.logging import setup_logging
from opsqueue.config.settings import Settings, get_settings
from opsqueue.core.exceptions import (
    OpsQueueException,
    RequestContextMiddleware,
    general_exception_handler,
    http_exception_handler,
    opsqueue_exception_handler,
)
from opsqueue.healthz import router as health_router
from opsqueue.jobs.routes import router as jobs_router


def create_app(settings: Settings | None = None) -> FastAPI:
    """Create the operator API application."""
    settings = settings or get_settings()

    # Initialize structured logging
    setup_logging()

    app = FastAPI(
        title=settings.app_name,
        description="Operator API for the opsqueue job system",
        version=settings.version,
        debug=settings.debug,
        openapi_url="/v1/openapi.json" if settings.debug else None,
        docs_url="/v1/docs" if settings.debug else None,
        redoc_url=None,
    )

    app.add_middleware(RequestContextMiddleware)

    app.add_exception_handler(OpsQueueException, opsqueue_exception_handler)
    app.add_exception_handler(HTTPException, http_exception_handler)
    app.add_exception_handler(Exception, general_exception_handler)

    app.include_router(health_router, prefix="/v1", tags=["health"])
    app.include_router(jobs_router, prefix="/v1")

    return app
