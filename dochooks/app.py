"""FastAPI application factory: wires settings, client, stores and routes.

Lifespan:
- startup: nothing remote; Redis and the API are contacted lazily
- shutdown: stop the reconcile scheduler (in-flight jobs are abandoned and
  can be redone by refetching), then close the HTTP client
"""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import Mapping

import redis
from fastapi import FastAPI

from dochooks.alerts import Alerter
from dochooks.bus import EventBus
from dochooks.client import DocumentApiClient
from dochooks.config import Settings
from dochooks.reconcile import Effect, ReconcileLedger, ReconcilePolicy, Reconciler, ReconcileScheduler
from dochooks.subscriptions import SubscriptionManager, SubscriptionStore
from dochooks.webhooks.dispatcher import Handler, reconcile_handlers
from dochooks.webhooks.handlers import WebhookReceiver, register_webhook_routes
from dochooks.webhooks.idempotency import DeliveryLedger
from dochooks.webhooks.models import EventKind

logger = logging.getLogger(__name__)


def configure_logging(level: str = "INFO") -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


def create_app(
    settings: Settings | None = None,
    *,
    client: DocumentApiClient | None = None,
    redis_client: redis.Redis | None = None,
    handlers: Mapping[EventKind, Handler] | None = None,
    on_ready: Effect | None = None,
    on_failed: Effect | None = None,
) -> FastAPI:
    """Build the receiver application.

    Args:
        settings: Defaults to Settings.from_env()
        client: Remote API client (built from settings when omitted)
        redis_client: Enables delivery dedup and alert publishing when given
        handlers: Kind -> handler map; defaults to scheduling reconciliation
            for every kind
        on_ready: Effect fired once when a document becomes ready
        on_failed: Effect fired once when a document fails
    """
    settings = settings or Settings.from_env()
    client = client or DocumentApiClient.from_settings(settings)

    alerter = Alerter(EventBus(redis_client) if redis_client is not None else None)
    ledger = DeliveryLedger(redis_client) if redis_client is not None else None

    reconciler = Reconciler(
        client.fetch_document,
        ReconcileLedger(),
        on_ready=on_ready,
        on_failed=on_failed,
    )
    scheduler = ReconcileScheduler(
        reconciler,
        ReconcilePolicy(
            max_attempts=settings.reconcile_max_attempts,
            base_delay=settings.reconcile_base_delay,
            max_delay=settings.reconcile_max_delay,
        ),
        alerter=alerter,
    )
    subscriptions = SubscriptionManager(client, SubscriptionStore())

    receiver = WebhookReceiver(
        settings,
        handlers if handlers is not None else reconcile_handlers(scheduler.schedule),
        ledger=ledger,
        alerter=alerter,
        scheduler=scheduler,
        subscriptions=subscriptions,
    )

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logger.info("dochooks receiver starting (api=%s)", settings.api_base_url)
        yield
        scheduler.shutdown()
        client.close()
        logger.info("dochooks receiver stopped")

    app = FastAPI(title="dochooks", lifespan=lifespan)
    app.state.settings = settings
    app.state.receiver = receiver
    app.state.scheduler = scheduler
    app.state.subscriptions = subscriptions
    register_webhook_routes(app, receiver)
    return app
