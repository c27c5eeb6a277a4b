"""
FastAPI Application

Main entry point for the Nexus Monitor API.
"""

from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.gzip import GZipMiddleware
from prometheus_client import make_asgi_app
import structlog

from nexus_monitor.config import get_settings
from nexus_monitor.config.logging import configure_logging
from nexus_monitor.database.connection import close_database, create_tables, init_database
from nexus_monitor.pipeline.orchestrator import create_pipeline
from nexus_monitor.serving.api.middleware import RequestLoggingMiddleware
from nexus_monitor.serving.api.routes import health_router, nexus_router

settings = get_settings()
logger = structlog.get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan manager."""
    configure_logging()
    logger.info("Starting Nexus Monitor API", environment=settings.app_env)

    await init_database()
    if not settings.is_production:
        await create_tables()

    app.state.pipeline = create_pipeline()

    yield

    logger.info("Shutting down...")
    await app.state.pipeline.close()
    await close_database()


def create_app() -> FastAPI:
    """Create and configure the FastAPI application."""
    app = FastAPI(
        title="Nexus Monitor API",
        description="Economic nexus exposure tracking and threshold alerts",
        version=settings.version,
        docs_url="/docs" if not settings.is_production else None,
        redoc_url="/redoc" if not settings.is_production else None,
        lifespan=lifespan,
    )

    app.add_middleware(GZipMiddleware, minimum_size=1000)
    app.add_middleware(RequestLoggingMiddleware)

    app.include_router(health_router, tags=["Health"])
    app.include_router(nexus_router, prefix="/nexus", tags=["Nexus"])
    app.mount("/metrics", make_asgi_app())

    return app


app = create_app()


def run() -> None:
    """Console entry point."""
    import uvicorn

    uvicorn.run(
        "nexus_monitor.main:app",
        host=settings.api_host,
        port=settings.api_port,
        log_config=None,
    )


if __name__ == "__main__":
    run()
