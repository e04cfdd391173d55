"""Pytest configuration and shared fixtures.

This module provides centralized test fixtures for:
- An in-memory FHIR server fake, reachable through httpx.MockTransport
- HTTP clients wired to one or more fake directories
- Common FHIR test data (Organization/Endpoint history entries)
"""

import copy
import json
from typing import Any

import httpx
import pytest
import pytest_asyncio

ROOT_BASE_URL = "http://root.example.org/fhir"
OTHER_ROOT_BASE_URL = "http://other-root.example.org/fhir"
LOCAL_BASE_URL = "http://local.example.org/fhir"


# =============================================================================
# FHIR Server Fake
# =============================================================================


class FakeFhirServer:
    """Minimal in-memory FHIR server.

    Supports the interactions used by the sync pipeline: system-level
    ``_history``, type-level search on ``_source`` and transaction Bundles
    with PUT/DELETE entries.
    """

    def __init__(self, base_url: str):
        self.base_url = base_url
        self.resources: dict[str, dict[str, dict[str, Any]]] = {}
        self.history: list[dict[str, Any]] = []
        self.history_links: list[dict[str, Any]] = []
        self.requests: list[httpx.Request] = []
        self.transactions: list[dict[str, Any]] = []
        self.fail_status: int | None = None
        self.fail_transport = False

    @property
    def resource_count(self) -> int:
        return sum(len(by_id) for by_id in self.resources.values())

    def put(self, resource: dict[str, Any]) -> None:
        """Store a resource directly, bypassing the REST interface."""
        self.resources.setdefault(resource["resourceType"], {})[resource["id"]] = copy.deepcopy(
            resource
        )

    def get(self, resource_type: str, resource_id: str) -> dict[str, Any] | None:
        return self.resources.get(resource_type, {}).get(resource_id)

    def handle(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if self.fail_transport:
            raise httpx.ConnectError("connection refused", request=request)
        if self.fail_status is not None:
            return httpx.Response(
                self.fail_status, json={"resourceType": "OperationOutcome", "issue": []}
            )

        base_path = httpx.URL(self.base_url).path.rstrip("/")
        path = request.url.path[len(base_path):].strip("/")

        if request.method == "GET" and path == "_history":
            return httpx.Response(
                200,
                json={
                    "resourceType": "Bundle",
                    "type": "history",
                    "link": self.history_links,
                    "entry": self.history,
                },
            )
        if request.method == "GET" and path and "/" not in path:
            return self._search(path, request.url.params)
        if request.method == "POST" and path == "":
            return self._transaction(json.loads(request.content))
        return httpx.Response(404, json={"resourceType": "OperationOutcome", "issue": []})

    def _search(self, resource_type: str, params: httpx.QueryParams) -> httpx.Response:
        matches = list(self.resources.get(resource_type, {}).values())
        if "_source" in params:
            matches = [
                r for r in matches if r.get("meta", {}).get("source") == params["_source"]
            ]
        count = int(params.get("_count", len(matches) or 1))
        return httpx.Response(
            200,
            json={
                "resourceType": "Bundle",
                "type": "searchset",
                "total": len(matches),
                "entry": [{"resource": r} for r in matches[:count]],
            },
        )

    def _transaction(self, bundle: dict[str, Any]) -> httpx.Response:
        self.transactions.append(bundle)
        response_entries = []
        for entry in bundle.get("entry", []):
            request = entry["request"]
            resource_type, resource_id = request["url"].split("/")
            if request["method"] == "PUT":
                existed = self.get(resource_type, resource_id) is not None
                self.put(entry["resource"])
                status = "200 OK" if existed else "201 Created"
            elif request["method"] == "DELETE":
                self.resources.get(resource_type, {}).pop(resource_id, None)
                status = "204 No Content"
            else:
                status = "400 Bad Request"
            response_entries.append({"response": {"status": status}})
        return httpx.Response(
            200,
            json={
                "resourceType": "Bundle",
                "type": "transaction-response",
                "entry": response_entries,
            },
        )


class FakeFhirNetwork:
    """Routes requests to fake servers by base URL."""

    def __init__(self):
        self.servers: dict[str, FakeFhirServer] = {}

    def add_server(self, base_url: str) -> FakeFhirServer:
        server = FakeFhirServer(base_url)
        self.servers[base_url] = server
        return server

    def handle(self, request: httpx.Request) -> httpx.Response:
        url = str(request.url)
        for base_url, server in self.servers.items():
            if url == base_url or url.startswith(base_url + "/") or url.startswith(base_url + "?"):
                return server.handle(request)
        raise httpx.ConnectError(f"unknown host for {url}", request=request)


# =============================================================================
# Fixtures
# =============================================================================


@pytest.fixture
def fhir_network() -> FakeFhirNetwork:
    """Network of fake FHIR servers."""
    return FakeFhirNetwork()


@pytest.fixture
def root_server(fhir_network) -> FakeFhirServer:
    """Fake root (administration) directory."""
    return fhir_network.add_server(ROOT_BASE_URL)


@pytest.fixture
def local_server(fhir_network) -> FakeFhirServer:
    """Fake local query directory."""
    return fhir_network.add_server(LOCAL_BASE_URL)


@pytest_asyncio.fixture
async def http_client(fhir_network):
    """Async HTTP client whose requests go to the fake network."""
    async with httpx.AsyncClient(transport=httpx.MockTransport(fhir_network.handle)) as client:
        yield client


# =============================================================================
# FHIR Test Data
# =============================================================================


def make_organization(resource_id: str = "org-1", name: str = "Sunflower Care Home") -> dict:
    """Create an Organization resource as stored on a root directory."""
    return {
        "resourceType": "Organization",
        "id": resource_id,
        "meta": {"versionId": "1", "lastUpdated": "2025-08-01T10:00:00.000+00:00"},
        "identifier": [{"system": "http://fhir.nl/fhir/NamingSystem/ura", "value": "12345"}],
        "name": name,
    }


def make_endpoint(
    resource_id: str = "ep-1",
    organization_reference: str = "Organization/org-1",
) -> dict:
    """Create an Endpoint resource managed by an Organization."""
    return {
        "resourceType": "Endpoint",
        "id": resource_id,
        "meta": {"versionId": "1", "lastUpdated": "2025-08-01T10:00:00.000+00:00"},
        "status": "active",
        "address": "https://sunflower.example.org/fhir",
        "managingOrganization": {"reference": organization_reference},
    }


def history_entry(
    resource: dict | None,
    base_url: str = ROOT_BASE_URL,
    method: str = "POST",
    url: str | None = None,
) -> dict:
    """Wrap a resource in a history Bundle.entry."""
    if url is None:
        url = f"{resource['resourceType']}/{resource['id']}"
    entry: dict[str, Any] = {
        "fullUrl": f"{base_url}/{url}",
        "request": {"method": method, "url": url},
    }
    if resource is not None:
        entry["resource"] = resource
    return entry


def make_directory_endpoint(
    resource_id: str = "dir-ep-1",
    address: str = "http://org1.example.org/fhir",
) -> dict:
    """Create an Endpoint announcing an mCSD administration directory."""
    return {
        "resourceType": "Endpoint",
        "id": resource_id,
        "meta": {"versionId": "1", "lastUpdated": "2025-08-01T10:00:00.000+00:00"},
        "status": "active",
        "payloadType": [
            {
                "coding": [
                    {
                        "system": "http://nuts-foundation.github.io/nl-generic-functions-ig/CodeSystem/nl-gf-data-exchange-capabilities",
                        "code": "http://nuts-foundation.github.io/nl-generic-functions-ig/CapabilityStatement/nl-gf-admin-directory-update-client",
                    }
                ]
            }
        ],
        "address": address,
    }
