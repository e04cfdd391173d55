"""Pydantic schemas for directories and FHIR history/transaction entries.

These schemas describe what flows through one directory's update pipeline:
entries read from a remote ``_history`` feed, the entries submitted to the
local query directory, and the per-entry outcomes of that submission.
"""

from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field


class HTTPVerb(str, Enum):
    """FHIR Bundle.entry.request methods."""

    GET = "GET"
    HEAD = "HEAD"
    POST = "POST"
    PUT = "PUT"
    PATCH = "PATCH"
    DELETE = "DELETE"


class Directory(BaseModel):
    """A named FHIR directory, identified by its base URL.

    ``discover`` marks a directory that is only used to find other
    administration directories. ``source`` is set on directories found that
    way: the provenance of the Endpoint that announced them.
    """

    model_config = ConfigDict(frozen=True)

    name: str
    fhir_base_url: str
    resource_types: tuple[str, ...] | None = None
    discover: bool = False
    source: str | None = None


class EntryRequest(BaseModel):
    """Bundle.entry.request of a history or transaction entry."""

    method: HTTPVerb
    url: str = ""


class HistoryEntry(BaseModel):
    """One change record from a remote directory's ``_history`` feed.

    Every part is optional here because remote feeds are not trusted;
    the transaction builder rejects entries with missing parts.
    """

    full_url: str | None = None
    resource: dict[str, Any] | None = None
    request: EntryRequest | None = None

    @classmethod
    def from_bundle_entry(cls, entry: dict[str, Any]) -> "HistoryEntry":
        """Parse a raw Bundle.entry dict, keeping unusable parts as None.

        Never raises on malformed input, so one bad entry can be rejected
        on its own later instead of failing the whole page.
        """
        request = entry.get("request")
        parsed_request = None
        if isinstance(request, dict):
            method = request.get("method")
            url = request.get("url")
            if isinstance(method, str) and method in HTTPVerb.__members__:
                parsed_request = EntryRequest(
                    method=HTTPVerb(method),
                    url=url if isinstance(url, str) else "",
                )
        full_url = entry.get("fullUrl")
        resource = entry.get("resource")
        return cls(
            full_url=full_url if isinstance(full_url, str) and full_url else None,
            resource=resource if isinstance(resource, dict) else None,
            request=parsed_request,
        )


class HistoryPage(BaseModel):
    """First page of a ``_history`` search result."""

    entries: list[HistoryEntry] = Field(default_factory=list)
    has_next_page: bool = False


class LocalTransactionEntry(BaseModel):
    """A history entry rewritten for the local query directory."""

    full_url: str
    resource: dict[str, Any] | None = None
    request: EntryRequest

    def to_bundle_entry(self) -> dict[str, Any]:
        """Render as a transaction Bundle.entry."""
        entry: dict[str, Any] = {
            "request": {"method": self.request.method.value, "url": self.request.url},
        }
        if self.resource is not None:
            entry["resource"] = self.resource
        return entry


class TransactionOutcome(BaseModel):
    """Observed response of one submitted transaction entry."""

    full_url: str | None = None
    status: str | None = None
