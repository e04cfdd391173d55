"""Resolution of remote FHIR references to local resource IDs.

Local copies of remote resources get their own IDs, so a reference such as
"Organization/123" as seen on a root directory has to be translated before
it can be stored in the local query directory. Resolvers return None when a
reference is unknown and raise when the answer cannot be trusted.
"""

import logging
from typing import Protocol

from mcsd_sync.services.directory_client import DirectoryClientError, FhirDirectoryClient
from mcsd_sync.utils.fhir_helpers import join_url, split_reference

logger = logging.getLogger(__name__)


class ReferenceResolutionError(Exception):
    """Raised when a reference cannot be resolved due to a lookup failure."""


class AmbiguousReferenceError(ReferenceResolutionError):
    """Raised when more than one local resource claims the same provenance."""


class ResourceIdResolver(Protocol):
    """Resolves a remote "Type/id" reference to a local resource ID."""

    async def resolve(self, reference: str) -> str | None: ...


class MapResourceIdResolver:
    """Resolves references minted earlier in the current transaction pass."""

    def __init__(self, mapping: dict[str, str] | None = None):
        self._mapping: dict[str, str] = dict(mapping or {})

    def add(self, reference: str, local_id: str) -> None:
        self._mapping[reference] = local_id

    async def resolve(self, reference: str) -> str | None:
        return self._mapping.get(reference)


class ProvenanceResourceIdResolver:
    """Finds the local copy of a remote resource through its meta.source.

    The local query directory is searched for resources whose provenance equals
    the fully-qualified remote reference ({source base URL}/{Type}/{id}).
    """

    def __init__(self, source_base_url: str, local_client: FhirDirectoryClient):
        """Initialize the resolver.

        Args:
            source_base_url: FHIR base URL of the directory the references come from.
            local_client: Client of the local query directory.
        """
        self.source_base_url = source_base_url
        self.local_client = local_client

    async def resolve(self, reference: str) -> str | None:
        parts = split_reference(reference)
        if parts is None:
            return None
        resource_type, _ = parts
        source = join_url(self.source_base_url, reference)

        try:
            # Two results are enough to detect ambiguity
            bundle = await self.local_client.search(
                resource_type, {"_source": source, "_count": "2"}
            )
        except DirectoryClientError as e:
            raise ReferenceResolutionError(
                f"resource id resolution: failed to search for resource {reference}: {e}"
            ) from e

        entries = [
            entry["resource"] if isinstance(entry.get("resource"), dict) else {}
            for entry in bundle.get("entry") or []
            if isinstance(entry, dict)
        ]
        if not entries:
            return None
        total = bundle.get("total")
        if len(entries) > 1 or (isinstance(total, int) and total > 1):
            raise AmbiguousReferenceError(
                f"resource id resolution: multiple resources found for {reference}"
            )

        local_id = entries[0].get("id")
        if not isinstance(local_id, str) or not local_id:
            raise ReferenceResolutionError(
                f"resource id resolution: local resource for {reference} has no id"
            )
        logger.debug("Resolved %s to local id %s via provenance", reference, local_id)
        return local_id


class ChainedResourceIdResolver:
    """Tries resolvers in order, returning the first non-None answer.

    Errors are propagated immediately; results are never merged.
    """

    def __init__(self, resolvers: list[ResourceIdResolver]):
        self.resolvers = list(resolvers)

    async def resolve(self, reference: str) -> str | None:
        for resolver in self.resolvers:
            local_id = await resolver.resolve(reference)
            if local_id is not None:
                return local_id
        return None
