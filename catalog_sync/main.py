"""
FastAPI application entry point.
Initializes the FastAPI app, configures logging, wires services, and includes routes.
"""
import asyncio

import structlog
from fastapi import FastAPI, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from catalog_sync.config import settings
from catalog_sync.container import ServiceContainer, build_container
from catalog_sync.errors import JobNotFoundError, ValidationError
from catalog_sync.routers import alerts, exchange_rates, sync_jobs, webhooks
from catalog_sync.utils.logger import configure_logging

logger = structlog.get_logger()

SERVICE_NAME = "Catalog Sync Service"
SERVICE_VERSION = "1.0.0"


async def validation_error_handler(request: Request, exc: ValidationError):
    return JSONResponse(
        status_code=status.HTTP_400_BAD_REQUEST,
        content={"success": False, "error": str(exc)},
    )


async def not_found_handler(request: Request, exc: JobNotFoundError):
    return JSONResponse(
        status_code=status.HTTP_404_NOT_FOUND,
        content={"success": False, "error": str(exc)},
    )


def create_app(container: ServiceContainer | None = None) -> FastAPI:
    """
    Build the FastAPI app.

    Args:
        container: Pre-built services (tests); built from settings at startup when omitted
    """
    app = FastAPI(
        title=SERVICE_NAME,
        description="Keeps inventory and prices consistent between Naver and Shopify",
        version=SERVICE_VERSION,
    )
    app.state.container = container
    app.state.owns_container = container is None
    app.state.notifier_task = None

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],  # Configure appropriately for production
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.add_exception_handler(ValidationError, validation_error_handler)
    app.add_exception_handler(JobNotFoundError, not_found_handler)

    app.include_router(webhooks.router)
    app.include_router(sync_jobs.router)
    app.include_router(alerts.router)
    app.include_router(exchange_rates.router)

    @app.on_event("startup")
    async def startup_event():
        """Application startup event."""
        if app.state.container is None:
            app.state.container = await build_container(settings)
        app.state.notifier_task = asyncio.create_task(app.state.container.notifier.start())
        logger.info(
            "Catalog sync service started",
            catalogs=app.state.container.catalogs.list_available(),
        )

    @app.on_event("shutdown")
    async def shutdown_event():
        """Application shutdown event."""
        logger.info("Catalog sync service shutting down")
        task = app.state.notifier_task
        if task is not None:
            task.cancel()
            await asyncio.gather(task, return_exceptions=True)
        if app.state.owns_container and app.state.container is not None:
            await app.state.container.close()

    @app.get("/health")
    async def health():
        """Health check endpoint."""
        container = app.state.container
        return {
            "status": "healthy",
            "service": SERVICE_NAME,
            "version": SERVICE_VERSION,
            "catalogs": container.catalogs.list_available() if container else [],
        }

    return app


configure_logging()
app = create_app()


if __name__ == "__main__":
    import uvicorn

    uvicorn.run("catalog_sync.main:app", host="0.0.0.0", port=8000, reload=True)
