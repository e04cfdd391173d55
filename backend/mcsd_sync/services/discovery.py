"""Discovery of mCSD administration directories.

A root directory configured with ``discover`` is not synchronized as a data
source. Only its Endpoints announcing an mCSD administration directory
(by payloadType) are copied to the local query directory, and each such
Endpoint's address is registered as an additional administration directory.
Deleting the Endpoint on the root directory unregisters the directory again.
"""

import logging
from collections.abc import Iterable
from typing import Any

import httpx

from mcsd_sync.schemas import Directory

logger = logging.getLogger(__name__)

MCSD_PAYLOAD_TYPE_SYSTEM = (
    "http://nuts-foundation.github.io/nl-generic-functions-ig/CodeSystem/"
    "nl-gf-data-exchange-capabilities"
)
MCSD_DIRECTORY_PAYLOAD_TYPE = (
    "http://nuts-foundation.github.io/nl-generic-functions-ig/CapabilityStatement/"
    "nl-gf-admin-directory-update-client"
)


class InvalidDirectoryURLError(ValueError):
    """Raised when a discovered address is not a usable FHIR base URL."""


def is_directory_endpoint(resource: dict[str, Any] | None) -> bool:
    """Check whether an Endpoint announces an mCSD administration directory."""
    if not resource or resource.get("resourceType") != "Endpoint":
        return False
    payload_types = resource.get("payloadType")
    if not isinstance(payload_types, list):
        return False
    for concept in payload_types:
        codings = concept.get("coding") if isinstance(concept, dict) else None
        for coding in codings if isinstance(codings, list) else []:
            if (
                isinstance(coding, dict)
                and coding.get("system") == MCSD_PAYLOAD_TYPE_SYSTEM
                and coding.get("code") == MCSD_DIRECTORY_PAYLOAD_TYPE
            ):
                return True
    return False


def normalize_base_url(url: str) -> str:
    """Base URLs are compared without trailing slashes."""
    return url.rstrip("/")


def validate_base_url(url: Any) -> str:
    """Return the normalized base URL, or raise InvalidDirectoryURLError.

    Only absolute http(s) URLs are accepted.
    """
    if not isinstance(url, str) or not url:
        raise InvalidDirectoryURLError(f"invalid FHIR base URL (url={url})")
    try:
        parsed = httpx.URL(url)
    except httpx.InvalidURL as e:
        raise InvalidDirectoryURLError(f"invalid FHIR base URL (url={url})") from e
    if parsed.scheme not in ("http", "https") or not parsed.host:
        raise InvalidDirectoryURLError(f"invalid FHIR base URL (url={url})")
    return normalize_base_url(url)


class DirectoryRegistry:
    """Administration directories found through discovery.

    Excluded base URLs (always including the local query directory) are
    never registered. Entries are keyed by normalized base URL.
    """

    def __init__(self, excluded: Iterable[str] = ()):
        self._excluded = {normalize_base_url(url) for url in excluded if url}
        self._directories: dict[str, Directory] = {}

    @property
    def directories(self) -> list[Directory]:
        return list(self._directories.values())

    def is_excluded(self, url: str) -> bool:
        return normalize_base_url(url) in self._excluded

    def register(self, url: Any, source: str) -> Directory | None:
        """Register the directory announced by the Endpoint at ``source``.

        Returns:
            The registered directory, or None when the URL is excluded.

        Raises:
            InvalidDirectoryURLError: if ``url`` is not a valid base URL, even
                when it is on the exclusion list.
        """
        base_url = validate_base_url(url)
        if base_url in self._excluded:
            logger.info("Not registering excluded mCSD directory %s (source=%s)", base_url, source)
            return None

        # An Endpoint whose address changed no longer announces its old address
        for stale in [d for d in self._directories.values() if d.source == source]:
            if stale.fhir_base_url != base_url:
                del self._directories[stale.fhir_base_url]

        directory = self._directories.get(base_url)
        if directory is None:
            directory = Directory(name=source, fhir_base_url=base_url, source=source)
            self._directories[base_url] = directory
            logger.info("Registered discovered mCSD directory %s (source=%s)", base_url, source)
        return directory

    def unregister(self, source: str) -> list[Directory]:
        """Remove the directories announced by the Endpoint at ``source``."""
        removed = [d for d in self._directories.values() if d.source == source]
        for directory in removed:
            del self._directories[directory.fhir_base_url]
            logger.info(
                "Unregistered mCSD directory %s (source=%s)", directory.fhir_base_url, source
            )
        return removed
