from contextlib import asynccontextmanager

from fastapi import FastAPI, HTTPException
from fastapi.middleware.cors import CORSMiddleware

from backfill.config.logging import setup_logging
from backfill.config.settings import settings
from backfill.v1.core.exceptions import (
    BackfillException,
    RequestContextMiddleware,
    backfill_exception_handler,
    general_exception_handler,
    http_exception_handler,
)
from backfill.v1.core.registries import migration_registry
from backfill.v1.healthz import router as health_router
from backfill.v1.migrations import registry_init  # noqa: F401
from backfill.v1.migrations.engine import shutdown_engine
from backfill.v1.migrations.routes import router as migrations_router


@asynccontextmanager
async def lifespan(app: FastAPI):
    yield
    # Wait for post-commit enqueues still being written
    await shutdown_engine()


def create_app() -> FastAPI:
    """Create and configure the FastAPI application."""

    # Initialize structured logging
    setup_logging()

    app = FastAPI(
        title=settings.app_name,
        description="Background migrations: scheduling, tracking and draining",
        version=settings.version,
        debug=settings.debug,
        # All endpoints will be under /v1/ prefix
        openapi_url="/v1/openapi.json" if settings.debug else None,
        docs_url="/v1/docs" if settings.debug else None,
        redoc_url="/v1/redoc" if settings.debug else None,
        lifespan=lifespan,
    )

    # Add middleware
    app.add_middleware(RequestContextMiddleware)

    # Add CORS middleware for development
    if settings.debug:
        app.add_middleware(
            CORSMiddleware,
            allow_origins=["*"],
            allow_credentials=True,
            allow_methods=["*"],
            allow_headers=["*"],
        )

    # Add exception handlers
    app.add_exception_handler(BackfillException, backfill_exception_handler)
    app.add_exception_handler(HTTPException, http_exception_handler)
    app.add_exception_handler(Exception, general_exception_handler)

    # Include routers with /v1 prefix
    app.include_router(health_router, prefix="/v1", tags=["health"])
    app.include_router(migrations_router, prefix="/v1")

    # Migration names are fixed per release outside development
    if settings.environment != "development":
        migration_registry.freeze()

    return app


# Create the app instance
app = create_app()


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "backfill.main:app",
        host=settings.host,
        port=settings.port,
        reload=settings.debug,
        workers=1 if settings.debug else settings.workers,
    )
