"""Tests for event parsing and dispatch."""

from __future__ import annotations

from unittest.mock import MagicMock

import pytest
from pydantic import ValidationError

from dochooks.errors import HandlerFailure, MalformedEvent
from dochooks.webhooks.dispatcher import dispatch_event, parse_event, reconcile_handlers
from dochooks.webhooks.models import EventKind, WebhookEvent


# ── Event models ──────────────────────────────────────────────────────────


class TestEventKind:
    def test_plain_value(self):
        assert EventKind.resolve("classify.failed") is EventKind.CLASSIFY_FAILED

    def test_document_prefix_stripped(self):
        assert EventKind.resolve("document.parse.completed") is EventKind.PARSE_COMPLETED

    def test_unknown_kind_is_none(self):
        assert EventKind.resolve("parse.exploded") is None

    def test_enumeration_is_closed(self):
        assert {k.value for k in EventKind} == {
            "parse.completed",
            "parse.succeeded",
            "parse.failed",
            "validate.completed",
            "classify.completed",
            "classify.succeeded",
            "classify.failed",
            "rejected",
        }


class TestParseEvent:
    def test_parses_full_body(self, make_event_body):
        event = parse_event(make_event_body(event="parse.succeeded", identifier="abc"))
        assert event.id == "evt_1"
        assert event.kind is EventKind.PARSE_SUCCEEDED
        assert event.timestamp == 1700000000
        assert event.identifier == "abc"
        assert event.payload.ready is True
        assert event.payload.failed is False
        assert event.payload.file_name == "invoice.pdf"
        assert event.payload.workspace.identifier == "ws1"
        assert event.payload.workspace.name == "Invoices"

    def test_minimal_payload(self):
        event = parse_event(b'{"id":"e1","event":"rejected","timestamp":1,"payload":{"identifier":"x"}}')
        assert event.payload.ready is False
        assert event.payload.failed is False
        assert event.payload.workspace is None

    def test_unknown_kind_still_parses(self, make_event_body):
        event = parse_event(make_event_body(event="extract.completed"))
        assert event.event == "extract.completed"
        assert event.kind is None

    def test_invalid_json(self):
        with pytest.raises(MalformedEvent):
            parse_event(b"{not json")

    def test_missing_identifier(self):
        with pytest.raises(MalformedEvent):
            parse_event(b'{"id":"e1","event":"rejected","timestamp":1,"payload":{}}')

    def test_empty_identifier(self, make_event_body):
        with pytest.raises(MalformedEvent):
            parse_event(make_event_body(identifier=""))

    def test_events_are_immutable(self, make_event_body):
        event = parse_event(make_event_body())
        with pytest.raises(ValidationError):
            event.id = "evt_2"


# ── dispatch_event ────────────────────────────────────────────────────────


class TestDispatchEvent:
    @pytest.fixture()
    def event(self, make_event_body) -> WebhookEvent:
        return parse_event(make_event_body(event="parse.completed"))

    def test_invokes_matching_handler_once(self, event):
        handler = MagicMock()
        assert dispatch_event(event, {EventKind.PARSE_COMPLETED: handler}) is True
        handler.assert_called_once_with(event)

    def test_unregistered_kind_is_noop(self, event):
        other = MagicMock()
        assert dispatch_event(event, {EventKind.CLASSIFY_COMPLETED: other}) is False
        other.assert_not_called()

    def test_unknown_kind_is_noop(self, make_event_body):
        event = parse_event(make_event_body(event="future.kind"))
        handlers = {kind: MagicMock() for kind in EventKind}
        assert dispatch_event(event, handlers) is False
        for handler in handlers.values():
            handler.assert_not_called()

    def test_prefixed_kind_dispatches(self, make_event_body):
        event = parse_event(make_event_body(event="document.classify.succeeded"))
        handler = MagicMock()
        assert dispatch_event(event, {EventKind.CLASSIFY_SUCCEEDED: handler}) is True
        handler.assert_called_once()

    def test_handler_error_wrapped(self, event):
        boom = RuntimeError("db down")
        handler = MagicMock(side_effect=boom)
        with pytest.raises(HandlerFailure) as exc_info:
            dispatch_event(event, {EventKind.PARSE_COMPLETED: handler})
        assert exc_info.value.event_id == "evt_1"
        assert exc_info.value.event_kind == "parse.completed"
        assert exc_info.value.cause is boom
        assert exc_info.value.__cause__ is boom
        handler.assert_called_once()


class TestReconcileHandlers:
    def test_every_kind_schedules_identifier(self, make_event_body):
        schedule = MagicMock()
        handlers = reconcile_handlers(schedule)
        assert set(handlers) == set(EventKind)

        event = parse_event(make_event_body(event="parse.failed", identifier="doc_9"))
        dispatch_event(event, handlers)
        schedule.assert_called_once_with("doc_9")
