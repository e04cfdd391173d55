"""Internal API routes for triggering mCSD updates."""

import logging

from fastapi import APIRouter, Depends, HTTPException, Request, status

from mcsd_sync.schemas import DirectoryUpdateReport
from mcsd_sync.services.sync_orchestrator import SyncConfigurationError, SyncOrchestrator

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/mcsd", tags=["mcsd"])


def get_orchestrator(request: Request) -> SyncOrchestrator:
    """Return the orchestrator created in the application lifespan."""
    return request.app.state.orchestrator


@router.post("/update", response_model=dict[str, DirectoryUpdateReport])
async def update(
    orchestrator: SyncOrchestrator = Depends(get_orchestrator),
) -> dict[str, DirectoryUpdateReport]:
    """Synchronize all root directories into the local query directory.

    Failures of individual directories are reported in the payload; the
    status code stays 200.

    Returns:
        Update report keyed by root directory base URL.

    Raises:
        HTTPException: 500 if the update could not run at all.
    """
    try:
        return await orchestrator.update()
    except SyncConfigurationError as e:
        logger.error("mCSD update failed: %s", e)
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail=f"Failed to update mCSD: {e}",
        )
