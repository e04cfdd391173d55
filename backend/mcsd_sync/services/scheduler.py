"""Periodic mCSD updates in the background of the API process."""

import asyncio
import contextlib
import logging

from mcsd_sync.services.sync_orchestrator import SyncOrchestrator

logger = logging.getLogger(__name__)


class SyncScheduler:
    """Runs ``SyncOrchestrator.update()`` every ``interval`` seconds.

    The first update runs immediately. Runs may overlap with updates
    triggered through the API; the orchestrator tolerates that.
    """

    def __init__(self, orchestrator: SyncOrchestrator, interval: float):
        if interval <= 0:
            raise ValueError("interval must be positive")
        self.orchestrator = orchestrator
        self.interval = interval
        self._task: asyncio.Task | None = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        if self.running:
            return
        self._task = asyncio.create_task(self._run(), name="mcsd-sync-scheduler")
        logger.info("mCSD update scheduled every %.0f seconds", self.interval)

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await self._task
        self._task = None

    async def _run(self) -> None:
        while True:
            try:
                await self.orchestrator.update()
            except Exception as e:
                logger.error("Scheduled mCSD update failed: %s", e)
            await asyncio.sleep(self.interval)
