"""Conversion of remote history entries into a local FHIR transaction.

Resource IDs from remote administration directories are never reused, since
IDs from independent directories can collide. Every local copy gets an ID
owned by the local query directory: the ID of the existing copy when the
local directory already holds a resource with the same provenance
(meta.source), otherwise a deterministic UUID derived from that provenance.
Entries are written with PUT on "{Type}/{localId}", so applying the same
history twice updates instead of duplicating.
"""

import copy
import logging
import re
import uuid
from dataclasses import dataclass, field
from typing import Any, Mapping

from mcsd_sync.schemas import EntryRequest, HistoryEntry, HTTPVerb, LocalTransactionEntry
from mcsd_sync.services.discovery import is_directory_endpoint
from mcsd_sync.services.resolvers import (
    ChainedResourceIdResolver,
    MapResourceIdResolver,
    ResourceIdResolver,
)
from mcsd_sync.utils.fhir_helpers import (
    get_last_updated,
    iter_reference_objects,
    join_url,
    relative_reference,
    resource_type_from_url,
)

logger = logging.getLogger(__name__)

_RESOURCE_TYPE = re.compile(r"^[A-Z][A-Za-z]+$")


class HistoryEntryError(ValueError):
    """Raised when a history entry cannot be included in the transaction."""


def mint_local_id(source: str) -> str:
    """Derive a stable local resource ID from a provenance URL."""
    return str(uuid.uuid5(uuid.NAMESPACE_URL, source))


def entry_resource_type(entry: HistoryEntry, allowed_resource_types: list[str]) -> str:
    """Validate the required parts of an entry and return its resource type.

    Raises:
        HistoryEntryError: if fullUrl, request or (for non-DELETE) the resource
            is missing, the resourceType is malformed, or the type is not allowed.
    """
    if entry.full_url is None:
        raise HistoryEntryError("missing 'fullUrl' field")
    if entry.request is None:
        raise HistoryEntryError(f"missing 'request' field (fullUrl={entry.full_url})")

    if entry.request.method == HTTPVerb.DELETE:
        # DELETE history entries carry no resource body
        resource_type = resource_type_from_url(entry.request.url)
        if resource_type is None and entry.resource is not None:
            resource_type = entry.resource.get("resourceType")
    else:
        if entry.resource is None:
            raise HistoryEntryError(f"missing 'resource' field (fullUrl={entry.full_url})")
        resource_type = entry.resource.get("resourceType")

    if not isinstance(resource_type, str) or not _RESOURCE_TYPE.match(resource_type):
        raise HistoryEntryError(f"not a valid resourceType (fullUrl={entry.full_url})")
    if resource_type not in allowed_resource_types:
        raise HistoryEntryError(f"resource type {resource_type} not allowed")
    return resource_type


def remote_reference(entry: HistoryEntry, resource_type: str, source_base_url: str) -> str | None:
    """Determine the "Type/id" of an entry's resource on the remote directory."""
    resource_id = entry.resource.get("id") if entry.resource else None
    if isinstance(resource_id, str) and resource_id:
        return f"{resource_type}/{resource_id}"
    for candidate in (entry.request.url if entry.request else None, entry.full_url):
        reference = relative_reference(candidate, source_base_url)
        if reference and reference.startswith(resource_type + "/"):
            return reference
    return None


def build_entry(
    entry: HistoryEntry,
    allowed_resource_types: list[str],
    source: str,
    local_id: str,
    references: Mapping[str, str] | None = None,
) -> tuple[str, LocalTransactionEntry]:
    """Convert one history entry into one local transaction entry.

    Pure: the input entry is not modified and no I/O is performed.

    Args:
        entry: History entry from a remote directory.
        allowed_resource_types: Resource types that may be synchronized.
        source: Provenance to store in meta.source.
        local_id: ID of the resource in the local query directory.
        references: Reference strings as found in the resource, mapped to their
            local "Type/id". References not in the mapping are left unchanged.

    Returns:
        Tuple of (resource type, local transaction entry).

    Raises:
        HistoryEntryError: if the entry is incomplete or its type is not allowed.
    """
    resource_type = entry_resource_type(entry, allowed_resource_types)
    local_url = f"{resource_type}/{local_id}"

    if entry.request.method == HTTPVerb.DELETE:
        return resource_type, LocalTransactionEntry(
            full_url=entry.full_url,
            request=EntryRequest(method=HTTPVerb.DELETE, url=local_url),
        )

    resource = copy.deepcopy(entry.resource)
    _update_resource_meta(resource, source)
    resource["id"] = local_id
    references = references or {}
    for reference_obj in iter_reference_objects(resource):
        local_reference = references.get(reference_obj["reference"])
        if local_reference is not None:
            reference_obj["reference"] = local_reference

    # Creates and updates both become PUT: the local ID is known up front
    return resource_type, LocalTransactionEntry(
        full_url=entry.full_url,
        resource=resource,
        request=EntryRequest(method=HTTPVerb.PUT, url=local_url),
    )


def _update_resource_meta(resource: dict[str, Any], source: str) -> None:
    meta = resource.get("meta")
    if not isinstance(meta, dict):
        meta = {}
        resource["meta"] = meta
    meta["source"] = source
    meta.pop("versionId", None)
    meta.pop("lastUpdated", None)


def _is_more_recent(entry: HistoryEntry, other: HistoryEntry) -> bool:
    entry_updated = get_last_updated(entry.resource)
    other_updated = get_last_updated(other.resource)
    if entry_updated is None or other_updated is None:
        return False
    return entry_updated > other_updated


def deduplicate_history(entries: list[HistoryEntry], source_base_url: str) -> list[HistoryEntry]:
    """Keep only the most recent version of each remote resource.

    History feeds are ordered newest first, so without comparable
    meta.lastUpdated values the first occurrence wins. Entries whose identity
    cannot be determined are kept as-is; they are rejected later.
    """
    return [entry for _, entry in _deduplicate_indexed(entries, source_base_url)]


def _deduplicate_indexed(
    entries: list[HistoryEntry], source_base_url: str
) -> list[tuple[int, HistoryEntry]]:
    """Like deduplicate_history, keeping each entry's position in the feed."""
    kept: list[tuple[int, HistoryEntry]] = []
    positions: dict[str, int] = {}
    for index, entry in enumerate(entries):
        key = None
        if entry.request is not None:
            resource_type = (entry.resource or {}).get("resourceType") or resource_type_from_url(
                entry.request.url
            )
            if isinstance(resource_type, str):
                key = remote_reference(entry, resource_type, source_base_url)
        if key is None:
            kept.append((index, entry))
            continue
        if key not in positions:
            positions[key] = len(kept)
            kept.append((index, entry))
        elif _is_more_recent(entry, kept[positions[key]][1]):
            kept[positions[key]] = (index, entry)
    return kept


@dataclass
class TransactionPlan:
    """Entries to submit plus the non-fatal anomalies found while building them.

    For discovering directories, ``discovered`` maps the provenance of each
    mCSD directory Endpoint to its address, and ``withdrawn`` lists the
    provenance of deleted Endpoints.
    """

    entries: list[LocalTransactionEntry] = field(default_factory=list)
    resource_types: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)
    discovered: dict[str, Any] = field(default_factory=dict)
    withdrawn: list[str] = field(default_factory=list)


class TransactionBuilder:
    """Builds the local transaction for one root directory's history.

    References are resolved through a chain: IDs assigned earlier in the same
    pass first, then the given provenance resolver (the local query directory).
    Resolver errors propagate and abort the directory.

    With ``discover`` set, only mCSD directory Endpoints (and Endpoint
    deletions) are taken over; other allowed resources are left out silently.
    """

    def __init__(
        self,
        source_base_url: str,
        allowed_resource_types: list[str],
        provenance_resolver: ResourceIdResolver,
        discover: bool = False,
    ):
        self.source_base_url = source_base_url
        self.allowed_resource_types = list(allowed_resource_types)
        self.discover = discover
        self.id_map = MapResourceIdResolver()
        self.resolver = ChainedResourceIdResolver([self.id_map, provenance_resolver])

    async def build(self, history: list[HistoryEntry]) -> TransactionPlan:
        """Build the transaction for a page of history entries.

        Args:
            history: Entries as returned by the remote directory.

        Returns:
            The plan with transaction entries and warnings for skipped entries
            and unresolved references. Warnings number entries by their
            position in ``history``.
        """
        plan = TransactionPlan()

        # Validate and assign local identities
        accepted: list[tuple[HistoryEntry, str, str]] = []
        for index, entry in _deduplicate_indexed(history, self.source_base_url):
            try:
                resource_type = entry_resource_type(entry, self.allowed_resource_types)
                reference = remote_reference(entry, resource_type, self.source_base_url)
                if reference is None:
                    raise HistoryEntryError(
                        f"can't determine remote resource id (fullUrl={entry.full_url})"
                    )
            except HistoryEntryError as e:
                logger.warning("Skipping history entry #%d from %s: %s", index, self.source_base_url, e)
                plan.warnings.append(f"Skipping history entry #{index}: {e}")
                continue

            if self.discover and not self._is_discovery_entry(entry, resource_type):
                continue

            local_id = await self.resolver.resolve(reference)
            if local_id is None:
                local_id = mint_local_id(join_url(self.source_base_url, reference))
            self.id_map.add(reference, local_id)
            accepted.append((entry, reference, local_id))

        # Build entries with references rewritten to local IDs
        for entry, reference, local_id in accepted:
            source = join_url(self.source_base_url, reference)
            references = await self._resolve_references(entry, plan.warnings)
            resource_type, local_entry = build_entry(
                entry,
                self.allowed_resource_types,
                source=source,
                local_id=local_id,
                references=references,
            )
            plan.entries.append(local_entry)
            plan.resource_types.append(resource_type)
            if self.discover:
                if entry.request.method == HTTPVerb.DELETE:
                    plan.withdrawn.append(source)
                else:
                    plan.discovered[source] = entry.resource.get("address")
        return plan

    @staticmethod
    def _is_discovery_entry(entry: HistoryEntry, resource_type: str) -> bool:
        if entry.request.method == HTTPVerb.DELETE:
            return resource_type == "Endpoint"
        return is_directory_endpoint(entry.resource)

    async def _resolve_references(self, entry: HistoryEntry, warnings: list[str]) -> dict[str, str]:
        references: dict[str, str] = {}
        if entry.resource is None:
            return references
        seen: set[str] = set()
        for reference_obj in iter_reference_objects(entry.resource):
            raw = reference_obj["reference"]
            if raw in seen:
                continue
            seen.add(raw)
            reference = relative_reference(raw, self.source_base_url)
            if reference is None:
                # Not a literal reference on the source directory (urn:uuid, #contained, other server)
                continue
            local_id = await self.resolver.resolve(reference)
            if local_id is None:
                logger.warning("Unresolved reference %s in %s", raw, entry.full_url)
                warnings.append(f"unresolved reference '{raw}' left unchanged (fullUrl={entry.full_url})")
                continue
            references[raw] = f"{reference.split('/')[0]}/{local_id}"
        return references
