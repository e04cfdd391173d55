"""FastAPI application entry point."""

import logging
from contextlib import asynccontextmanager

import httpx
from fastapi import FastAPI

from mcsd_sync.config import settings
from mcsd_sync.routes import mcsd
from mcsd_sync.services.scheduler import SyncScheduler
from mcsd_sync.services.sync_orchestrator import SyncOrchestrator

logging.basicConfig(
    level=logging.DEBUG if settings.debug else settings.log_level.upper(),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan events for startup/shutdown."""
    # Startup: shared HTTP client, orchestrator and optional scheduler
    http_client = httpx.AsyncClient(timeout=settings.request_timeout)
    orchestrator = SyncOrchestrator.from_settings(settings, http_client)
    app.state.orchestrator = orchestrator

    scheduler = None
    if settings.update_interval > 0:
        scheduler = SyncScheduler(orchestrator, settings.update_interval)
        scheduler.start()
    else:
        logger.info("Scheduled mCSD updates disabled")

    try:
        yield  # Application runs here
    finally:
        if scheduler is not None:
            await scheduler.stop()
        await http_client.aclose()


app = FastAPI(
    title="mCSD Sync",
    description="mCSD update client synchronizing root directories into a local query directory",
    version="0.1.0",
    lifespan=lifespan,
)

# Internal API routers
app.include_router(mcsd.router)


@app.get("/health")
async def health_check() -> dict:
    """Health check endpoint."""
    return {"status": "healthy"}
