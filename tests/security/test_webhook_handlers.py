"""Webhook handler integration tests.

Verifies the full HTTP request flow through the receiver:
- Signature verification at HTTP level (401, no details disclosed)
- Handshake echo and subscription activation
- Idempotency (duplicate acknowledged without reprocessing)
- 200 acknowledgment for unknown kinds and handler failures
- Reconciliation runs after the response and fires effects once
"""

from __future__ import annotations

import time
from unittest.mock import MagicMock

import pytest
from fastapi.testclient import TestClient

from dochooks.app import create_app
from dochooks.client import DocumentApiClient
from dochooks.reconcile import DocumentState
from dochooks.subscriptions import Scope, SubscriptionRecord
from dochooks.webhooks.models import EventKind
from dochooks.webhooks.verification import sign_header


def _post(client, body: bytes, secret: bytes | None, path: str = "/webhooks", timestamp: int | None = None):
    headers = {"Content-Type": "application/json"}
    if secret is not None:
        headers["X-Hook-Signature"] = sign_header(body, secret, timestamp=timestamp)
    return client.post(path, content=body, headers=headers)


class TestVerificationAtHttpLevel:
    def test_valid_delivery_returns_200(self, client, secret, make_event_body):
        resp = _post(client, make_event_body(), secret)
        assert resp.status_code == 200
        assert resp.json() == {"status": "received"}

    def test_invalid_signature_returns_401(self, client, make_event_body, remote):
        resp = client.post(
            "/webhooks",
            content=make_event_body(),
            headers={"X-Hook-Signature": f"{int(time.time())}.deadbeef"},
        )
        assert resp.status_code == 401
        assert resp.json() == {"status": "unauthorized"}
        assert remote.requests == []

    def test_no_signature_returns_401(self, client, make_event_body):
        """Missing signature header -> 401 (fail-closed)."""
        resp = _post(client, make_event_body(), None)
        assert resp.status_code == 401

    def test_stale_delivery_returns_401(self, client, secret, make_event_body, remote, effects):
        resp = _post(client, make_event_body(), secret, timestamp=int(time.time()) - 3600)
        assert resp.status_code == 401
        assert remote.requests == []
        effects["on_ready"].assert_not_called()

    def test_wrong_scope_secret_returns_401(self, client, make_event_body):
        resp = _post(client, make_event_body(), b"ws1-secret", path="/webhooks")
        assert resp.status_code == 401

    def test_scoped_route_uses_scope_secret(self, client, make_event_body):
        resp = _post(client, make_event_body(), b"ws1-secret", path="/webhooks/ws1")
        assert resp.status_code == 200

    def test_unconfigured_scope_rejected(self, client, secret, make_event_body):
        resp = _post(client, make_event_body(), secret, path="/webhooks/nobody")
        assert resp.status_code == 401

    def test_verification_failures_counted_as_alerts(self, client, make_event_body):
        _post(client, make_event_body(), b"wrong")
        status = client.get("/webhooks/status").json()
        assert status["alerts"]["verification_failure"] == 1
        assert status["alerts"]["handler_failure"] == 0
        assert status["counts"]["signature_mismatch"] == 1

    def test_verification_failure_published_to_bus(self, client, make_event_body, mock_redis):
        _post(client, make_event_body(), b"wrong")
        stream, entry = mock_redis.xadd.call_args.args
        assert stream == "dochooks:alerts"
        assert entry["msg_type"] == "verification_failure"


class TestMalformedEvents:
    def test_verified_garbage_returns_422(self, client, secret, effects):
        resp = _post(client, b'{"id": "evt_1"}', secret)
        assert resp.status_code == 422
        assert resp.json() == {"status": "invalid"}
        effects["on_ready"].assert_not_called()


class TestDispatchAndReconcile:
    def test_delivery_reconciles_by_identifier(self, client, secret, make_event_body, remote, effects):
        # the event claims ready=False; the fetched state is authoritative
        _post(client, make_event_body(identifier="doc_123", ready=False), secret)

        assert remote.paths("GET") == ["/documents/doc_123"]
        effects["on_ready"].assert_called_once_with(
            DocumentState("doc_123", ready=True, data={"total": "42.00"})
        )

    def test_prefixed_kind_reconciles(self, client, secret, make_event_body, remote):
        _post(client, make_event_body(event="document.parse.completed"), secret)
        assert remote.paths("GET") == ["/documents/doc_123"]

    def test_redelivery_fires_effect_once(self, client, secret, make_event_body, effects):
        _post(client, make_event_body(event_id="evt_1"), secret)
        _post(client, make_event_body(event_id="evt_2", event="validate.completed"), secret)
        effects["on_ready"].assert_called_once()

    def test_failed_document_fires_on_failed(self, client, secret, make_event_body, remote, effects):
        remote.documents["doc_bad"] = {"ready": False, "failed": True}
        _post(client, make_event_body(event="parse.failed", identifier="doc_bad"), secret)
        effects["on_failed"].assert_called_once()
        effects["on_ready"].assert_not_called()

    def test_vanished_document_alerts_data_integrity(self, client, secret, make_event_body, effects):
        resp = _post(client, make_event_body(identifier="doc_missing"), secret)
        assert resp.status_code == 200
        assert client.get("/webhooks/status").json()["alerts"]["fetch_permanent"] == 1
        effects["on_ready"].assert_not_called()

    def test_unknown_kind_returns_200_without_fetch(self, client, secret, make_event_body, remote):
        resp = _post(client, make_event_body(event="extract.completed"), secret)
        assert resp.status_code == 200
        assert remote.requests == []
        assert client.get("/webhooks/status").json()["counts"]["skipped"] == 1

    def test_duplicate_returns_200_without_reprocessing(self, client, secret, make_event_body, remote, mock_redis):
        mock_redis.set.return_value = None  # SET NX failed: seen before
        resp = _post(client, make_event_body(), secret)
        assert resp.status_code == 200
        assert remote.requests == []


class TestHandlerFailure:
    @pytest.fixture()
    def failing_client(self, settings, remote, mock_redis):
        failing = MagicMock(side_effect=RuntimeError("bug in handler"))
        client = DocumentApiClient(settings.api_base_url, settings.api_key)
        app = create_app(
            settings,
            client=client,
            redis_client=mock_redis,
            handlers={EventKind.PARSE_COMPLETED: failing},
        )
        with TestClient(app, raise_server_exceptions=False) as c:
            yield c, failing

    def test_handler_failure_still_acknowledged(self, failing_client, secret, make_event_body):
        client, failing = failing_client
        resp = _post(client, make_event_body(), secret)
        assert resp.status_code == 200
        failing.assert_called_once()

        status = client.get("/webhooks/status").json()
        assert status["alerts"]["handler_failure"] == 1
        assert status["alerts"]["verification_failure"] == 0
        assert status["counts"]["handler_failed"] == 1


class TestHandshake:
    def test_echoes_secret(self, client):
        resp = client.post("/webhooks", headers={"X-Hook-Secret": "hs-123"})
        assert resp.status_code == 200
        assert resp.headers["X-Hook-Secret"] == "hs-123"

    def test_records_handshake_and_activates_pending(self, app, client, remote):
        subscriptions = app.state.subscriptions
        record = SubscriptionRecord(
            "wh_1", "http://testserver/webhooks", "parse.completed", Scope.organization("org_1")
        )
        subscriptions.store.put(record)

        client.post("/webhooks", headers={"X-Hook-Secret": "hs-123"})

        assert remote.paths("POST") == ["/webhooks/wh_1/activate"]
        active = subscriptions.store.get("wh_1")
        assert active.active is True
        assert active.secret == "hs-123"
        # nothing left awaiting a handshake at this target
        assert subscriptions.store.handshake_secret("http://testserver/webhooks") is None
        assert client.get("/webhooks/status").json()["counts"]["handshake_acknowledged"] == 1

    def test_handshake_without_pending_subscription_not_recorded(self, app, client, remote):
        resp = client.post("/webhooks", headers={"X-Hook-Secret": "forged"})
        assert resp.status_code == 200
        assert app.state.subscriptions.store.handshake_secret("http://testserver/webhooks") is None
        assert remote.requests == []
        assert client.get("/webhooks/status").json()["counts"]["handshake_ignored"] == 1

    def test_second_handshake_does_not_replace_first(self, app, client, remote):
        subscriptions = app.state.subscriptions
        target = "http://testserver/webhooks"
        subscriptions.store.put(SubscriptionRecord("wh_2", target, "rejected", Scope.workspace("ws_1")))
        assert subscriptions.store.acknowledge_handshake(target, "hs-real") is True

        resp = client.post("/webhooks", headers={"X-Hook-Secret": "hs-forged"})

        assert resp.status_code == 200
        assert subscriptions.store.handshake_secret(target) == "hs-real"
        assert remote.requests == []
        assert subscriptions.confirm("wh_2", "hs-real").active is True
        assert remote.paths("POST") == ["/webhooks/wh_2/activate"]

    def test_handshake_needs_no_signature(self, client, remote):
        resp = client.post("/webhooks/ws1", headers={"X-Hook-Secret": "hs-456"})
        assert resp.status_code == 200
        assert remote.requests == []
