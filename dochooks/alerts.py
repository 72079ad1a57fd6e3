"""Operator alerts, split into classes that point at different owners.

- verification_failure: forged, stale or misconfigured deliveries (security/config)
- handler_failure: a local handler raised (application bug)
- fetch_permanent: a referenced document vanished (data integrity)
- reconcile_exhausted: a document never reached a terminal state in time
"""

from __future__ import annotations

import logging
from enum import Enum
from typing import Any

from dochooks.bus import STREAM_ALERTS, EventBus

logger = logging.getLogger(__name__)


class AlertClass(str, Enum):
    VERIFICATION_FAILURE = "verification_failure"
    HANDLER_FAILURE = "handler_failure"
    FETCH_PERMANENT = "fetch_permanent"
    RECONCILE_EXHAUSTED = "reconcile_exhausted"


_SEVERITY = {
    AlertClass.VERIFICATION_FAILURE: logging.WARNING,
    AlertClass.HANDLER_FAILURE: logging.ERROR,
    AlertClass.FETCH_PERMANENT: logging.ERROR,
    AlertClass.RECONCILE_EXHAUSTED: logging.WARNING,
}


class Alerter:
    """Logs alerts and, when a bus is attached, publishes them to Redis."""

    def __init__(self, bus: EventBus | None = None):
        self._bus = bus
        self.counts: dict[AlertClass, int] = {cls: 0 for cls in AlertClass}

    def emit(self, alert_class: AlertClass, message: str, **details: Any) -> None:
        self.counts[alert_class] += 1
        logger.log(
            _SEVERITY[alert_class],
            "ALERT class=%s %s %s",
            alert_class.value,
            message,
            " ".join(f"{k}={v}" for k, v in sorted(details.items())),
        )
        if self._bus is not None:
            self._bus.publish(
                STREAM_ALERTS,
                alert_class.value,
                {"message": message, **details},
                source="dochooks",
            )
