"""Shared FHIR resource parsing utilities.

Consolidates the reference, URL and meta handling used by the sync pipeline.
All functions are pure and handle missing/malformed data gracefully.
"""

import re
from collections.abc import Iterator
from datetime import datetime, timezone
from typing import Any

# Relative literal reference: Type/id, optionally versioned (Type/id/_history/1)
_RELATIVE_REFERENCE = re.compile(
    r"^(?P<type>[A-Z][A-Za-z]+)/(?P<id>[A-Za-z0-9\-.]{1,64})(/_history/[A-Za-z0-9\-.]+)?$"
)


def split_reference(reference: str | None) -> tuple[str, str] | None:
    """Split a relative literal reference into (resource type, id).

    Version suffixes are dropped: "Organization/1/_history/2" -> ("Organization", "1").
    Returns None for anything that is not a relative literal reference
    (absolute URLs, urn:uuid, contained "#" references).
    """
    if not reference:
        return None
    match = _RELATIVE_REFERENCE.match(reference)
    if not match:
        return None
    return match.group("type"), match.group("id")


def relative_reference(reference: str | None, base_url: str) -> str | None:
    """Normalize a reference on the given server to "Type/id".

    Absolute references are only accepted when they point at ``base_url``.

    Args:
        reference: FHIR reference string as found in a resource
        base_url: FHIR base URL of the server the resource came from

    Returns:
        "Type/id" or None if the reference does not point at base_url
    """
    if not reference:
        return None
    prefix = base_url.rstrip("/") + "/"
    if reference.startswith(prefix):
        reference = reference[len(prefix):]
    parts = split_reference(reference)
    if parts is None:
        return None
    return f"{parts[0]}/{parts[1]}"


def resource_type_from_url(url: str | None) -> str | None:
    """Extract the resource type from a request URL like "Endpoint/123"."""
    if not url:
        return None
    resource_type = url.split("?")[0].split("/")[0]
    if not re.match(r"^[A-Z][A-Za-z]+$", resource_type):
        return None
    return resource_type


def join_url(base_url: str, path: str) -> str:
    """Join a FHIR base URL and a relative path with exactly one slash."""
    return base_url.rstrip("/") + "/" + path.lstrip("/")


def iter_reference_objects(obj: Any) -> Iterator[dict[str, Any]]:
    """Yield every nested dict carrying a string "reference" key.

    Args:
        obj: FHIR resource (or any part of it)

    Yields:
        The Reference dicts, so callers can rewrite them in place
    """
    if isinstance(obj, dict):
        if isinstance(obj.get("reference"), str):
            yield obj
        for value in obj.values():
            yield from iter_reference_objects(value)
    elif isinstance(obj, list):
        for item in obj:
            yield from iter_reference_objects(item)


def get_last_updated(resource: dict[str, Any] | None) -> datetime | None:
    """Parse resource.meta.lastUpdated.

    Args:
        resource: FHIR resource or None (DELETE history entries carry no body)

    Returns:
        Timezone-aware datetime, or None when absent or unparseable
    """
    if not resource:
        return None
    meta = resource.get("meta")
    if not isinstance(meta, dict):
        return None
    value = meta.get("lastUpdated")
    if not isinstance(value, str):
        return None
    try:
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def format_instant(moment: datetime) -> str:
    """Format a datetime as a FHIR instant (RFC 3339, UTC)."""
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=timezone.utc)
    return moment.astimezone(timezone.utc).isoformat()
