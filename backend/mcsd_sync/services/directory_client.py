"""FHIR directory client for history search, search and transactions."""

import logging
from datetime import datetime
from typing import Any

import httpx

from mcsd_sync.schemas import (
    HistoryEntry,
    HistoryPage,
    LocalTransactionEntry,
    TransactionOutcome,
)
from mcsd_sync.utils.fhir_helpers import format_instant, join_url

logger = logging.getLogger(__name__)

FHIR_JSON = "application/fhir+json"


class DirectoryClientError(Exception):
    """Raised when a directory cannot be reached or returns an unusable response."""


def _as_list(value: Any) -> list:
    """Bundle arrays may be absent or null."""
    return value if isinstance(value, list) else []


def _response_status(response_entry: Any) -> str | None:
    """Extract Bundle.entry.response.status; malformed entries yield None."""
    if not isinstance(response_entry, dict):
        return None
    response = response_entry.get("response")
    if not isinstance(response, dict):
        return None
    status = response.get("status")
    if status is None or status == "":
        return None
    return str(status)


class FhirDirectoryClient:
    """Thin FHIR REST client bound to one directory base URL.

    The underlying httpx.AsyncClient is shared and owned by the caller.
    """

    def __init__(self, base_url: str, http_client: httpx.AsyncClient):
        """Initialize the client.

        Args:
            base_url: FHIR base URL of the directory.
            http_client: Shared async HTTP client (timeouts are configured on it).
        """
        self.base_url = base_url.rstrip("/")
        self._http = http_client

    async def fetch_history(self, since: datetime | None = None) -> HistoryPage:
        """Run a system-level ``_history`` interaction.

        Only the first page is read: next links are reported through
        ``HistoryPage.has_next_page`` but never followed.

        Args:
            since: Lower bound for changes; None fetches the full history.

        Returns:
            The parsed entries of the first result page.
        """
        params = {}
        if since is not None:
            params["_since"] = format_instant(since)
        bundle = await self._request_bundle("GET", "_history", params=params)
        entries = [
            HistoryEntry.from_bundle_entry(entry if isinstance(entry, dict) else {})
            for entry in _as_list(bundle.get("entry"))
        ]
        has_next = any(
            link.get("relation") == "next"
            for link in _as_list(bundle.get("link"))
            if isinstance(link, dict)
        )
        logger.debug(
            "Fetched %d history entries from %s (since=%s)", len(entries), self.base_url, since
        )
        return HistoryPage(entries=entries, has_next_page=has_next)

    async def search(self, resource_type: str, params: dict[str, str]) -> dict[str, Any]:
        """Search a resource type and return the searchset Bundle."""
        return await self._request_bundle("GET", resource_type, params=params)

    async def submit_transaction(
        self, entries: list[LocalTransactionEntry]
    ) -> list[TransactionOutcome]:
        """Post a transaction Bundle and report the status of each entry.

        Response entries are correlated with the submitted entries by position,
        as FHIR requires for transaction responses.

        Args:
            entries: Entries to apply, in order.

        Returns:
            One outcome per submitted entry.
        """
        bundle = {
            "resourceType": "Bundle",
            "type": "transaction",
            "entry": [entry.to_bundle_entry() for entry in entries],
        }
        result = await self._request_bundle("POST", "", json=bundle)
        response_entries = _as_list(result.get("entry"))

        outcomes = []
        for index, entry in enumerate(entries):
            status = None
            if index < len(response_entries):
                status = _response_status(response_entries[index])
            outcomes.append(TransactionOutcome(full_url=entry.full_url, status=status))
        return outcomes

    async def _request_bundle(
        self,
        method: str,
        path: str,
        params: dict[str, str] | None = None,
        json: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        url = join_url(self.base_url, path) if path else self.base_url
        headers = {"Accept": FHIR_JSON}
        if json is not None:
            headers["Content-Type"] = FHIR_JSON
        try:
            response = await self._http.request(
                method, url, params=params, json=json, headers=headers
            )
        except httpx.HTTPError as e:
            raise DirectoryClientError(f"{method} {url} failed: {e}") from e

        if response.is_error:
            raise DirectoryClientError(
                f"{method} {url} failed: HTTP {response.status_code}"
            )
        try:
            body = response.json()
        except ValueError as e:
            raise DirectoryClientError(f"{method} {url} returned invalid JSON") from e
        if not isinstance(body, dict) or body.get("resourceType") != "Bundle":
            raise DirectoryClientError(f"{method} {url} did not return a Bundle")
        return body
