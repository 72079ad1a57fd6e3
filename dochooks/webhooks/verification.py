"""Webhook signature verification — constant-time HMAC-SHA256.

The sender signs the raw body and sends ``X-Hook-Signature: <ts>.<hex>``.

Security contract:
- All comparisons use hmac.compare_digest() (constant-time, no timing attacks)
- Freshness is checked before the signature, so stale replays fail the same
  way whether or not the signature is valid
- Empty secret -> verification always fails (fail-closed)
- Pure functions: no network, storage or clock access beyond ``now``
"""

from __future__ import annotations

import hashlib
import hmac
import logging
import re
import time

from dochooks.config import DEFAULT_SIGNATURE_TOLERANCE
from dochooks.errors import MalformedHeader, SignatureMismatch, StaleEvent

logger = logging.getLogger(__name__)

SIGNATURE_HEADER = "x-hook-signature"
HANDSHAKE_HEADER = "x-hook-secret"

_HEADER_RE = re.compile(r"^(\d{1,12})\.([0-9a-fA-F]+)$")


def _as_bytes(secret: bytes | str) -> bytes:
    return secret.encode("utf-8") if isinstance(secret, str) else secret


def compute_signature(body: bytes, secret: bytes | str) -> str:
    """Hex HMAC-SHA256 of ``body`` keyed by ``secret``."""
    return hmac.new(_as_bytes(secret), body, hashlib.sha256).hexdigest()


def sign_header(body: bytes, secret: bytes | str, timestamp: int | None = None) -> str:
    """Build an ``X-Hook-Signature`` value for ``body``."""
    ts = int(time.time()) if timestamp is None else timestamp
    return f"{ts}.{compute_signature(body, secret)}"


def parse_signature_header(header_value: str | None) -> tuple[int, str]:
    """Split ``<timestamp>.<hex-signature>`` into its parts.

    Raises:
        MalformedHeader: header missing or not in the expected shape.
    """
    if not header_value:
        raise MalformedHeader("missing signature header")
    match = _HEADER_RE.match(header_value.strip())
    if match is None:
        raise MalformedHeader("signature header is not <timestamp>.<hex>")
    return int(match.group(1)), match.group(2).lower()


def verify_signature(
    body: bytes,
    header_value: str | None,
    secret: bytes | str,
    now: int | None = None,
    tolerance: int = DEFAULT_SIGNATURE_TOLERANCE,
) -> None:
    """Verify a delivery's authenticity and freshness.

    Args:
        body: Raw request body bytes, exactly as received
        header_value: Value of the X-Hook-Signature header
        secret: Signing secret for the delivery's scope
        now: Current unix time (defaults to the wall clock)
        tolerance: Maximum event age in seconds

    Raises:
        MalformedHeader: header cannot be parsed
        StaleEvent: event is ``tolerance`` seconds old or older, or that far
            in the future
        SignatureMismatch: HMAC does not match (or no secret configured)
    """
    timestamp, received = parse_signature_header(header_value)

    current = int(time.time()) if now is None else now
    age = current - timestamp
    if age >= tolerance or -age >= tolerance:
        logger.warning("Webhook timestamp outside tolerance: ts=%d age=%ds", timestamp, age)
        raise StaleEvent(f"event timestamp {timestamp} is {age}s from now")

    secret_bytes = _as_bytes(secret)
    if not secret_bytes:
        raise SignatureMismatch("no signing secret configured")

    expected = compute_signature(body, secret_bytes)
    if not hmac.compare_digest(expected, received):
        raise SignatureMismatch("signature does not match body")


def verify_request(
    body: bytes,
    headers: dict[str, str],
    secret: bytes | str,
    now: int | None = None,
    tolerance: int = DEFAULT_SIGNATURE_TOLERANCE,
) -> None:
    """verify_signature() reading the header from a lowercase-keyed headers dict."""
    verify_signature(body, headers.get(SIGNATURE_HEADER), secret, now=now, tolerance=tolerance)
