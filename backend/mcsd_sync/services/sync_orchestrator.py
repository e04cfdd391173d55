"""mCSD update orchestration across root directories.

For every configured root (administration) directory the orchestrator fetches
the ``_history`` feed since the last successful sync, builds a transaction for
the local query directory, submits it and aggregates the outcome. Directories
are processed one after another and fail independently: a failing directory
gets an error in its report and the next directory is still synchronized.

Root directories configured with ``discover`` announce further administration
directories through Endpoints; those are synchronized after the root
directories in the same update.
"""

import asyncio
import logging
from collections.abc import Callable
from datetime import datetime, timezone

import httpx

from mcsd_sync.config import Settings
from mcsd_sync.schemas import Directory, DirectoryUpdateReport, UpdateReport
from mcsd_sync.services.directory_client import DirectoryClientError, FhirDirectoryClient
from mcsd_sync.services.discovery import DirectoryRegistry, InvalidDirectoryURLError
from mcsd_sync.services.resolvers import ProvenanceResourceIdResolver, ReferenceResolutionError
from mcsd_sync.services.result_aggregator import aggregate
from mcsd_sync.services.transaction_builder import TransactionBuilder, TransactionPlan

logger = logging.getLogger(__name__)

PAGINATION_WARNING = (
    "History result is paginated; only the first page was processed. "
    "Changes on later pages are not retried by subsequent updates."
)


class SyncConfigurationError(Exception):
    """Raised when the orchestrator can't run at all (no report is produced)."""


class DirectorySyncError(Exception):
    """Raised when one directory's pipeline fails; recorded in its report."""


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class CheckpointStore:
    """Last successful sync time per directory base URL.

    All access goes through one lock, held only for the dict access. A
    checkpoint never moves backwards, so overlapping updates finishing out of
    order keep the newest value. Not persisted: a restart means a full resync.
    """

    def __init__(self):
        self._checkpoints: dict[str, datetime] = {}
        self._lock = asyncio.Lock()

    async def get(self, base_url: str) -> datetime | None:
        async with self._lock:
            return self._checkpoints.get(base_url)

    async def set(self, base_url: str, moment: datetime) -> datetime:
        async with self._lock:
            current = self._checkpoints.get(base_url)
            if current is None or moment > current:
                self._checkpoints[base_url] = moment
            return self._checkpoints[base_url]


class SyncOrchestrator:
    """Synchronizes the local query directory with the root directories."""

    def __init__(
        self,
        root_directories: list[Directory],
        local_directory: Directory,
        allowed_resource_types: list[str],
        http_client: httpx.AsyncClient,
        directory_timeout: float | None = None,
        clock: Callable[[], datetime] = _utcnow,
        excluded_directories: list[str] | None = None,
    ):
        """Initialize the orchestrator.

        Args:
            root_directories: Directories to pull history from.
            local_directory: Query directory the changes are applied to.
            allowed_resource_types: Resource types synchronized by default.
            http_client: Shared HTTP client for all directories.
            directory_timeout: Deadline in seconds for one directory's pipeline.
            clock: Source of the checkpoint timestamps.
            excluded_directories: Base URLs never registered through discovery.
                The local query directory and the root directories are
                always excluded.
        """
        self.root_directories = list(root_directories)
        self.local_directory = local_directory
        self.allowed_resource_types = list(allowed_resource_types)
        self.http_client = http_client
        self.directory_timeout = directory_timeout
        self._clock = clock
        self._checkpoints = CheckpointStore()
        self.registry = DirectoryRegistry(
            [
                local_directory.fhir_base_url,
                *(d.fhir_base_url for d in self.root_directories),
                *(excluded_directories or []),
            ]
        )

    @classmethod
    def from_settings(cls, settings: Settings, http_client: httpx.AsyncClient) -> "SyncOrchestrator":
        """Create an orchestrator from application settings."""
        root_directories = [
            Directory(
                name=name,
                fhir_base_url=config.fhir_base_url,
                resource_types=tuple(config.resource_types) if config.resource_types else None,
                discover=config.discover,
            )
            for name, config in settings.root_directories.items()
        ]
        local_directory = Directory(
            name="local",
            fhir_base_url=settings.local_directory.fhir_base_url,
        )
        return cls(
            root_directories=root_directories,
            local_directory=local_directory,
            allowed_resource_types=settings.allowed_resource_types,
            http_client=http_client,
            directory_timeout=settings.directory_timeout or None,
            excluded_directories=settings.exclude_admin_directories,
        )

    async def get_checkpoint(self, base_url: str) -> datetime | None:
        """Return the last successful sync time of a directory, if any."""
        return await self._checkpoints.get(base_url)

    async def set_checkpoint(self, base_url: str, moment: datetime) -> datetime:
        """Record a successful sync; returns the stored (never older) checkpoint."""
        return await self._checkpoints.set(base_url, moment)

    async def update(self) -> UpdateReport:
        """Synchronize all root and discovered directories once.

        Returns:
            One report per directory, keyed by its base URL.

        Raises:
            SyncConfigurationError: if the local query directory is not configured.
        """
        if not self.local_directory.fhir_base_url:
            raise SyncConfigurationError("local query directory has no FHIR base URL")

        result: UpdateReport = {}
        for directory in self.root_directories:
            result[directory.fhir_base_url] = await self._update_directory(directory)
        # Includes directories registered by the root directories above
        for directory in self.registry.directories:
            result[directory.fhir_base_url] = await self._update_directory(directory)
        return result

    async def _update_directory(self, directory: Directory) -> DirectoryUpdateReport:
        base_url = directory.fhir_base_url
        since = await self.get_checkpoint(base_url)
        started_at = self._clock()
        try:
            report = await self._run_with_deadline(directory, since)
        except Exception as e:
            logger.error("mCSD directory update failed (directory=%s): %s", base_url, e)
            return DirectoryUpdateReport(error=str(e))

        await self.set_checkpoint(base_url, started_at)
        logger.info(
            "mCSD update of %s: created=%d updated=%d deleted=%d warnings=%d",
            base_url,
            report.created,
            report.updated,
            report.deleted,
            len(report.warnings),
        )
        return report

    async def _run_with_deadline(
        self, directory: Directory, since: datetime | None
    ) -> DirectoryUpdateReport:
        if self.directory_timeout is None:
            return await self.update_from_directory(directory, since)
        try:
            return await asyncio.wait_for(
                self.update_from_directory(directory, since), self.directory_timeout
            )
        except asyncio.TimeoutError as e:
            raise DirectorySyncError(
                f"directory update timed out after {self.directory_timeout}s"
            ) from e

    async def update_from_directory(
        self, directory: Directory, since: datetime | None
    ) -> DirectoryUpdateReport:
        """Run fetch, build, submit and aggregate for one directory.

        Args:
            directory: Directory to synchronize.
            since: Checkpoint of the previous successful sync, None for a full sync.

        Raises:
            DirectorySyncError: if any stage fails; nothing is recorded then.
        """
        remote_client = FhirDirectoryClient(directory.fhir_base_url, self.http_client)
        local_client = FhirDirectoryClient(self.local_directory.fhir_base_url, self.http_client)
        allowed = list(directory.resource_types or self.allowed_resource_types)

        # TODO: follow "next" links once the local transaction can be split per page
        try:
            page = await remote_client.fetch_history(since)
        except DirectoryClientError as e:
            raise DirectorySyncError(f"_history search failed: {e}") from e

        builder = TransactionBuilder(
            directory.fhir_base_url,
            allowed,
            ProvenanceResourceIdResolver(directory.fhir_base_url, local_client),
            discover=directory.discover,
        )
        try:
            plan = await builder.build(page.entries)
        except ReferenceResolutionError as e:
            raise DirectorySyncError(f"failed to build update transaction: {e}") from e

        warnings = list(plan.warnings)
        if page.has_next_page:
            logger.warning("%s (directory=%s)", PAGINATION_WARNING, directory.fhir_base_url)
            warnings.insert(0, PAGINATION_WARNING)

        outcomes = []
        if plan.entries:
            try:
                outcomes = await local_client.submit_transaction(plan.entries)
            except DirectoryClientError as e:
                raise DirectorySyncError(
                    f"failed to apply mCSD update to local directory: {e}"
                ) from e
        warnings.extend(self._apply_discovery(plan))
        return aggregate(outcomes, warnings)

    def _apply_discovery(self, plan: TransactionPlan) -> list[str]:
        """Update the registry from an applied plan; returns warnings."""
        warnings = []
        for source in plan.withdrawn:
            self.registry.unregister(source)
        for source, address in plan.discovered.items():
            try:
                self.registry.register(address, source)
            except InvalidDirectoryURLError as e:
                msg = f"failed to register discovered mCSD Directory at {address}: {e}"
                logger.warning(msg)
                warnings.append(msg)
        return warnings
