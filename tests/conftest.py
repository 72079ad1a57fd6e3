"""Shared fixtures for the dochooks test suite."""

from __future__ import annotations

import json
from typing import Any, Callable

import pytest

from dochooks.config import Settings


@pytest.fixture()
def secret() -> bytes:
    return b"test-secret"


@pytest.fixture()
def settings(secret: bytes) -> Settings:
    return Settings(
        api_base_url="https://api.test",
        api_key="test-key",
        webhook_secrets={"default": secret, "ws1": b"ws1-secret"},
    )


@pytest.fixture()
def make_event_body() -> Callable[..., bytes]:
    """Build a raw delivery body the way the remote API serializes it."""

    def _make(
        event: str = "parse.completed",
        identifier: str = "doc_123",
        event_id: str = "evt_1",
        timestamp: int = 1700000000,
        **payload: Any,
    ) -> bytes:
        body = {
            "id": event_id,
            "event": event,
            "timestamp": timestamp,
            "payload": {
                "identifier": identifier,
                "ready": True,
                "failed": False,
                "fileName": "invoice.pdf",
                "workspace": {"identifier": "ws1", "name": "Invoices"},
                **payload,
            },
        }
        return json.dumps(body).encode()

    return _make
