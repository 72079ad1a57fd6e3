"""Webhook HTTP handlers — FastAPI route handlers for inbound deliveries.

Each delivery:
1. Reads raw body (needed for HMAC verification)
2. Answers the subscription handshake if X-Hook-Secret is present
3. Verifies X-Hook-Signature (authenticity + freshness)
4. Parses the verified body into a WebhookEvent
5. Checks idempotency (acknowledge duplicates without reprocessing)
6. Dispatches to handlers; reconciliation runs as a background task
7. Returns 200 immediately

Security contract:
- Never return error details to the sender (info disclosure)
- 401 only for verification failures; forged or stale events never reach
  the dispatcher
- 200 for unknown kinds, duplicates and handler failures (the sender's
  retry loop is not a recovery path for local bugs)
- Log all webhook activity for audit trail
"""

from __future__ import annotations

import logging
import time
from typing import Mapping

from fastapi import BackgroundTasks, FastAPI, Request
from fastapi.responses import JSONResponse

from dochooks.alerts import AlertClass, Alerter
from dochooks.config import DEFAULT_SCOPE, Settings
from dochooks.errors import HandlerFailure, MalformedEvent, VerificationError
from dochooks.reconcile import ReconcileScheduler
from dochooks.subscriptions import SubscriptionManager
from dochooks.webhooks.dispatcher import Handler, dispatch_event, parse_event
from dochooks.webhooks.idempotency import DeliveryLedger
from dochooks.webhooks.models import EventKind
from dochooks.webhooks.verification import HANDSHAKE_HEADER, verify_request

logger = logging.getLogger(__name__)


class WebhookReceiver:
    """Everything a delivery needs, wired once per application."""

    def __init__(
        self,
        settings: Settings,
        handlers: Mapping[EventKind, Handler],
        *,
        ledger: DeliveryLedger | None = None,
        alerter: Alerter | None = None,
        scheduler: ReconcileScheduler | None = None,
        subscriptions: SubscriptionManager | None = None,
    ):
        self.settings = settings
        self.handlers = handlers
        self.ledger = ledger
        self.alerter = alerter or Alerter()
        self.scheduler = scheduler
        self.subscriptions = subscriptions
        self.counts: dict[str, int] = {}

    def _audit(self, scope: str, event_type: str, event_id: str, status: str) -> None:
        self.counts[status] = self.counts.get(status, 0) + 1
        logger.info(
            "WEBHOOK_AUDIT scope=%s event=%s id=%s status=%s count=%d",
            scope,
            event_type,
            event_id,
            status,
            self.counts[status],
        )

    def target_url(self, request: Request) -> str:
        """The URL the remote side was told to deliver to."""
        if self.settings.public_base_url:
            return f"{self.settings.public_base_url}{request.url.path}"
        return str(request.url)

    def handle_handshake(
        self, request: Request, secret: str, scope: str, background_tasks: BackgroundTasks
    ) -> JSONResponse:
        target_url = self.target_url(request)
        status = "handshake_ignored"
        # unsigned: only a target awaiting a handshake records it, first secret wins
        if self.subscriptions is not None and self.subscriptions.store.acknowledge_handshake(target_url, secret):
            status = "handshake_acknowledged"
            background_tasks.add_task(self.subscriptions.confirm_pending, target_url)
        self._audit(scope, "handshake", "", status)
        return JSONResponse(
            {"status": "ok"},
            status_code=200,
            headers={"X-Hook-Secret": secret},
        )

    async def handle(
        self, request: Request, background_tasks: BackgroundTasks, scope: str = DEFAULT_SCOPE
    ) -> JSONResponse:
        start = time.time()

        body = await request.body()
        headers = {k.lower(): v for k, v in request.headers.items()}

        handshake_secret = headers.get(HANDSHAKE_HEADER)
        if handshake_secret:
            return self.handle_handshake(request, handshake_secret, scope, background_tasks)

        # 1. Verify before touching the body
        try:
            verify_request(
                body,
                headers,
                self.settings.secret_for(scope),
                tolerance=self.settings.signature_tolerance,
            )
        except VerificationError as e:
            self.alerter.emit(AlertClass.VERIFICATION_FAILURE, e.reason, scope=scope)
            self._audit(scope, "unknown", "unknown", e.reason)
            return JSONResponse({"status": "unauthorized"}, status_code=401)

        # 2. Parse
        try:
            event = parse_event(body)
        except MalformedEvent:
            self._audit(scope, "unknown", "unknown", "invalid_event")
            return JSONResponse({"status": "invalid"}, status_code=422)

        # 3. Idempotency
        if self.ledger is not None and self.ledger.is_duplicate(scope, event.id):
            self._audit(scope, event.event, event.id, "duplicate")
            return JSONResponse({"status": "received"}, status_code=200)

        # 4. Dispatch; failures never change the acknowledgment
        try:
            handled = dispatch_event(event, self.handlers)
            self._audit(scope, event.event, event.id, "dispatched" if handled else "skipped")
        except HandlerFailure as e:
            logger.exception("Failed to handle webhook event: %s/%s", e.event_kind, e.event_id)
            self.alerter.emit(
                AlertClass.HANDLER_FAILURE,
                "webhook handler raised",
                event_id=e.event_id,
                kind=e.event_kind,
                error=type(e.cause).__name__,
            )
            self._audit(scope, event.event, event.id, "handler_failed")

        if self.scheduler is not None and self.scheduler.pending:
            background_tasks.add_task(self.scheduler.drain)

        elapsed_ms = (time.time() - start) * 1000
        logger.debug("Webhook processed in %.1fms: %s/%s", elapsed_ms, event.event, event.id)

        return JSONResponse({"status": "received"}, status_code=200)


def register_webhook_routes(app: FastAPI, receiver: WebhookReceiver) -> None:
    """Register webhook endpoint routes on the FastAPI app."""

    @app.get("/webhooks/status")
    async def webhook_status():
        """Delivery counts by outcome, plus alert counts by class."""
        return {
            "counts": dict(receiver.counts),
            "alerts": {cls.value: n for cls, n in receiver.alerter.counts.items()},
        }

    @app.post("/webhooks")
    async def receive_webhook(request: Request, background_tasks: BackgroundTasks):
        """Receive a delivery signed with the default-scope secret."""
        return await receiver.handle(request, background_tasks)

    @app.post("/webhooks/{scope}")
    async def receive_scoped_webhook(scope: str, request: Request, background_tasks: BackgroundTasks):
        """Receive a delivery signed with ``scope``'s secret."""
        return await receiver.handle(request, background_tasks, scope=scope)

    logger.info("Webhook routes registered: /webhooks, /webhooks/{scope}")
