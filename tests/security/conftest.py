"""HTTP-level fixtures for the webhook receiver.

Builds the real FastAPI app with:
- a DocumentApiClient on httpx.MockTransport (no network)
- a MagicMock Redis client (dedup + alert publishing)
- on_ready / on_failed effects as MagicMocks
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any
from unittest.mock import MagicMock

import httpx
import pytest
from fastapi.testclient import TestClient

from dochooks.app import create_app
from dochooks.client import DocumentApiClient


@dataclass
class FakeRemote:
    """Scriptable stand-in for the remote document API."""

    documents: dict[str, dict[str, Any]] = field(default_factory=dict)
    requests: list[httpx.Request] = field(default_factory=list)

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        path = request.url.path
        if request.method == "GET" and path.startswith("/documents/"):
            identifier = path.rsplit("/", 1)[-1]
            if identifier not in self.documents:
                return httpx.Response(404, json={"error": "not found"})
            return httpx.Response(200, json={"identifier": identifier, **self.documents[identifier]})
        if request.method == "POST" and path.endswith("/activate"):
            return httpx.Response(200, json={"active": True})
        return httpx.Response(404)

    def paths(self, method: str = "GET") -> list[str]:
        return [r.url.path for r in self.requests if r.method == method]


@pytest.fixture()
def remote() -> FakeRemote:
    return FakeRemote(documents={"doc_123": {"ready": True, "failed": False, "data": {"total": "42.00"}}})


@pytest.fixture()
def mock_redis():
    r = MagicMock()
    r.set.return_value = True  # not a duplicate
    return r


@pytest.fixture()
def effects():
    return {"on_ready": MagicMock(), "on_failed": MagicMock()}


@pytest.fixture()
def app(settings, remote, mock_redis, effects):
    client = DocumentApiClient(settings.api_base_url, settings.api_key, transport=httpx.MockTransport(remote))
    return create_app(settings, client=client, redis_client=mock_redis, **effects)


@pytest.fixture()
def client(app):
    """TestClient running the app lifespan; background tasks finish before each call returns."""
    with TestClient(app, raise_server_exceptions=False) as c:
        yield c
