"""Webhook event dispatcher — routes verified events to application handlers.

Maps event kinds to handler callables supplied by the integrating application.

Security contract:
- Only bodies that passed verification are parsed into events
- Unknown or unregistered kinds are a no-op success (future kinds must not
  break delivery acknowledgment)
- Each handler runs exactly once per dispatch; failures are raised as
  HandlerFailure and never turn into a non-200 response
"""

from __future__ import annotations

import logging
from typing import Callable, Mapping

from pydantic import ValidationError

from dochooks.errors import HandlerFailure, MalformedEvent
from dochooks.webhooks.models import EventKind, WebhookEvent

logger = logging.getLogger(__name__)

Handler = Callable[[WebhookEvent], None]


def parse_event(body: bytes) -> WebhookEvent:
    """Parse a verified raw body into a WebhookEvent.

    Raises:
        MalformedEvent: body is not JSON or does not match the event shape
    """
    try:
        return WebhookEvent.model_validate_json(body)
    except ValidationError as e:
        raise MalformedEvent(f"invalid webhook event: {e.error_count()} error(s)") from e


def dispatch_event(event: WebhookEvent, handlers: Mapping[EventKind, Handler]) -> bool:
    """Invoke the handler registered for ``event``'s kind.

    Returns:
        True if a handler ran, False if the kind is unknown or unhandled.

    Raises:
        HandlerFailure: the handler raised.
    """
    kind = event.kind
    handler = handlers.get(kind) if kind is not None else None
    if handler is None:
        logger.info("No handler for webhook event %s (%s) — skipping", event.id, event.event)
        return False

    logger.info(
        "Dispatching webhook event %s: %s for document %s",
        event.id,
        kind.value,
        event.identifier,
    )
    try:
        handler(event)
    except Exception as e:
        raise HandlerFailure(event.id, kind.value, e) from e
    return True


def reconcile_handlers(schedule: Callable[[str], None]) -> dict[EventKind, Handler]:
    """Default handler map: every kind schedules reconciliation of its document.

    The event body is status metadata only; the scheduled job re-fetches the
    authoritative state by identifier.
    """

    def _schedule(event: WebhookEvent) -> None:
        schedule(event.identifier)

    return {kind: _schedule for kind in EventKind}
