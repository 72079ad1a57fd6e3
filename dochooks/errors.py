"""Exception taxonomy for webhook intake, reconciliation and subscriptions.

Verification errors are terminal for a delivery (respond 401, drop the event).
Dispatch errors never change the HTTP acknowledgment.
Fetch errors are split into transient (retry with backoff) and permanent
(surface immediately, the document is gone).
"""

from __future__ import annotations

from enum import Enum

# HTTP status codes the remote peer uses for throttling and server trouble
TRANSIENT_STATUS_CODES = {408, 425, 429, 500, 502, 503, 504}


class DochooksError(Exception):
    """Base class for all dochooks errors."""


# ── Verification ──────────────────────────────────────────────────────────


class VerificationError(DochooksError):
    """Inbound delivery failed authentication or freshness checks."""

    reason = "verification_failed"


class MalformedHeader(VerificationError):
    reason = "malformed_header"


class SignatureMismatch(VerificationError):
    reason = "signature_mismatch"


class StaleEvent(VerificationError):
    reason = "stale_event"


# ── Dispatch ──────────────────────────────────────────────────────────────


class DispatchError(DochooksError):
    """A verified delivery could not be handled locally."""


class MalformedEvent(DispatchError):
    """Verified body is not a structurally valid webhook event."""


class HandlerFailure(DispatchError):
    """A registered handler raised while processing an event."""

    def __init__(self, event_id: str, event_kind: str, cause: BaseException):
        super().__init__(f"handler for {event_kind} failed on event {event_id}: {cause!r}")
        self.event_id = event_id
        self.event_kind = event_kind
        self.cause = cause


# ── Reconciliation ────────────────────────────────────────────────────────


class ReconcileError(DochooksError):
    """Reconciliation could not obtain authoritative document state."""


class FetchError(ReconcileError):
    """Remote document retrieval failed."""

    def __init__(self, identifier: str, message: str = "", status_code: int | None = None):
        super().__init__(message or f"fetch failed for document {identifier}")
        self.identifier = identifier
        self.status_code = status_code


class TransientFetchError(FetchError):
    """Timeouts, connection errors, 429 and 5xx. Caller retries with backoff."""


class PermanentFetchError(FetchError):
    """404 and other non-retryable responses. The document vanished or never existed."""


# ── Subscriptions ─────────────────────────────────────────────────────────


class SubscriptionError(DochooksError):
    """Subscription management failure."""


class HandshakeNotAcknowledged(SubscriptionError):
    """confirm() called before the handshake secret was echoed back."""


class SubscriptionNotFound(SubscriptionError):
    """Subscription id is unknown locally and remotely."""


class SubscriptionApiError(SubscriptionError):
    """Remote subscription endpoint returned an unexpected error."""

    def __init__(self, message: str, status_code: int | None = None):
        super().__init__(message)
        self.status_code = status_code


class FailureClass(str, Enum):
    """Retry classification of a remote failure."""

    TRANSIENT = "transient"
    PERMANENT = "permanent"


def classify_status(status_code: int) -> FailureClass:
    """Map an HTTP error status to a retry class."""
    if status_code in TRANSIENT_STATUS_CODES or status_code >= 500:
        return FailureClass.TRANSIENT
    return FailureClass.PERMANENT
