"""Document-processing API client (httpx).

Wraps the two remote surfaces this package consumes:
- document retrieval by identifier (never retried here; failures are typed
  TransientFetchError / PermanentFetchError for the reconcile scheduler)
- webhook subscription create/activate/list/delete (retried with backoff)
"""

from __future__ import annotations

import logging
from typing import Any

import httpx

from dochooks.config import Settings
from dochooks.errors import FailureClass, PermanentFetchError, TransientFetchError, classify_status
from dochooks.reconcile import DocumentState
from dochooks.retry import retry_with_backoff

logger = logging.getLogger(__name__)


class DocumentApiClient:
    """Synchronous client for the remote document and webhook endpoints."""

    def __init__(
        self,
        base_url: str,
        api_key: str,
        timeout: float = 30.0,
        transport: httpx.BaseTransport | None = None,
    ):
        self._http = httpx.Client(
            base_url=base_url.rstrip("/"),
            headers={
                "X-API-Key": api_key,
                "Accept": "application/json",
            },
            timeout=timeout,
            transport=transport,
        )

    @classmethod
    def from_settings(cls, settings: Settings) -> DocumentApiClient:
        return cls(settings.api_base_url, settings.api_key, timeout=settings.http_timeout)

    def close(self) -> None:
        self._http.close()

    def __enter__(self) -> DocumentApiClient:
        return self

    def __exit__(self, *exc: object) -> None:
        self.close()

    # ── Documents ─────────────────────────────────────────────────────────

    def fetch_document(self, identifier: str) -> DocumentState:
        """GET /documents/{identifier} -> DocumentState.

        Raises:
            TransientFetchError: timeout, connection error, 429 or 5xx
            PermanentFetchError: 404 or another non-retryable status
        """
        try:
            response = self._http.get(f"/documents/{identifier}")
        except httpx.TransportError as e:
            raise TransientFetchError(
                identifier, f"{type(e).__name__} fetching document {identifier}"
            ) from e

        if response.is_error:
            status = response.status_code
            message = f"HTTP {status} fetching document {identifier}"
            if classify_status(status) is FailureClass.TRANSIENT:
                raise TransientFetchError(identifier, message, status_code=status)
            raise PermanentFetchError(identifier, message, status_code=status)

        try:
            body = response.json()
        except ValueError as e:
            raise TransientFetchError(
                identifier, f"unparseable document body for {identifier}"
            ) from e
        return DocumentState.from_api(identifier, body)

    # ── Webhook subscriptions ─────────────────────────────────────────────

    @retry_with_backoff(max_retries=3, base_delay=1.0, max_delay=30.0)
    def create_subscription(self, body: dict[str, Any]) -> dict[str, Any]:
        response = self._http.post("/webhooks", json=body)
        response.raise_for_status()
        return response.json()

    @retry_with_backoff(max_retries=3, base_delay=1.0, max_delay=30.0)
    def activate_subscription(self, subscription_id: str, secret: str) -> dict[str, Any]:
        response = self._http.post(
            f"/webhooks/{subscription_id}/activate",
            json={"secret": secret},
        )
        response.raise_for_status()
        return response.json() if response.content else {}

    @retry_with_backoff(max_retries=3, base_delay=1.0, max_delay=30.0)
    def list_subscriptions(self, params: dict[str, str]) -> list[dict[str, Any]]:
        response = self._http.get("/webhooks", params=params)
        response.raise_for_status()
        body = response.json()
        if isinstance(body, dict):
            body = body.get("webhooks") or body.get("data") or []
        return list(body)

    @retry_with_backoff(max_retries=3, base_delay=1.0, max_delay=30.0)
    def delete_subscription(self, subscription_id: str) -> bool:
        """DELETE /webhooks/{id}. Returns False if the remote had no such subscription."""
        response = self._http.delete(f"/webhooks/{subscription_id}")
        if response.status_code in (404, 410):
            logger.info("Subscription %s already gone remotely (HTTP %d)", subscription_id, response.status_code)
            return False
        response.raise_for_status()
        return True
