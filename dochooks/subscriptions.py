"""Webhook subscription management.

Lifecycle: create -> pending; remote POSTs X-Hook-Secret to the target URL;
we answer 200 echoing it (recorded in the store); confirm() then activates
the subscription remotely with that secret -> active. The remote side deletes
subscriptions whose target keeps failing, so delete() treats "already gone"
as success and list() prunes local records the remote no longer has.

Security contract:
- confirm() refuses secrets that were not acknowledged in a handshake
- Handshake secrets are compared with hmac.compare_digest()
- All state lives in an explicit SubscriptionStore (no module singleton)
"""

from __future__ import annotations

import hmac
import logging
import threading
from dataclasses import dataclass, replace
from enum import Enum
from typing import Any

import httpx

from dochooks.client import DocumentApiClient
from dochooks.errors import HandshakeNotAcknowledged, SubscriptionApiError, SubscriptionNotFound
from dochooks.webhooks.models import EventKind

logger = logging.getLogger(__name__)


class ScopeKind(str, Enum):
    ORGANIZATION = "organization"
    WORKSPACE = "workspace"


@dataclass(frozen=True)
class Scope:
    """Either an organization or a single workspace."""

    kind: ScopeKind
    identifier: str

    @classmethod
    def organization(cls, identifier: str) -> Scope:
        return cls(ScopeKind.ORGANIZATION, identifier)

    @classmethod
    def workspace(cls, identifier: str) -> Scope:
        return cls(ScopeKind.WORKSPACE, identifier)

    def as_params(self) -> dict[str, str]:
        return {self.kind.value: self.identifier}

    @classmethod
    def from_api(cls, body: dict[str, Any]) -> Scope:
        scope = body.get("scope") if isinstance(body.get("scope"), dict) else body
        if scope.get("workspace"):
            return cls.workspace(str(scope["workspace"]))
        return cls.organization(str(scope.get("organization", "")))


class SubscriptionStatus(str, Enum):
    PENDING = "pending"
    ACTIVE = "active"


@dataclass(frozen=True)
class SubscriptionRecord:
    id: str
    target_url: str
    event: str
    scope: Scope
    secret: str | None = None
    active: bool = False

    @property
    def status(self) -> SubscriptionStatus:
        return SubscriptionStatus.ACTIVE if self.active else SubscriptionStatus.PENDING

    @property
    def kind(self) -> EventKind | None:
        return EventKind.resolve(self.event)

    @classmethod
    def from_api(cls, body: dict[str, Any]) -> SubscriptionRecord:
        event = str(body.get("event", ""))
        kind = EventKind.resolve(event)
        return cls(
            id=str(body.get("id") or body.get("webhookId") or ""),
            target_url=str(body.get("targetUrl") or body.get("url") or ""),
            event=kind.value if kind else event,
            scope=Scope.from_api(body),
            active=bool(body.get("active", False)),
        )


class SubscriptionStore:
    """Application-lifetime store of known subscriptions and handshake acks."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._records: dict[str, SubscriptionRecord] = {}
        self._handshakes: dict[str, str] = {}
        self._expecting: dict[str, int] = {}

    def put(self, record: SubscriptionRecord) -> None:
        with self._lock:
            self._records[record.id] = record

    def get(self, subscription_id: str) -> SubscriptionRecord | None:
        with self._lock:
            return self._records.get(subscription_id)

    def remove(self, subscription_id: str) -> SubscriptionRecord | None:
        with self._lock:
            return self._records.pop(subscription_id, None)

    def in_scope(self, scope: Scope) -> list[SubscriptionRecord]:
        with self._lock:
            return [r for r in self._records.values() if r.scope == scope]

    def pending_for(self, target_url: str) -> list[SubscriptionRecord]:
        with self._lock:
            return [
                r for r in self._records.values()
                if r.target_url == target_url and not r.active
            ]

    def expect_handshake(self, target_url: str) -> None:
        """Mark ``target_url`` as awaiting a handshake while a create is in flight."""
        with self._lock:
            self._expecting[target_url] = self._expecting.get(target_url, 0) + 1

    def release_expectation(self, target_url: str) -> None:
        with self._lock:
            remaining = self._expecting.get(target_url, 0) - 1
            if remaining > 0:
                self._expecting[target_url] = remaining
            else:
                self._expecting.pop(target_url, None)
        self.settle_handshake(target_url)

    def acknowledge_handshake(self, target_url: str, secret: str) -> bool:
        """Record that the handshake for ``target_url`` was answered with ``secret``.

        Only a target awaiting a handshake (a create in flight or a pending
        subscription) is recorded, and the first secret recorded is kept.
        Returns True when ``secret`` is the recorded secret.
        """
        with self._lock:
            if not self._awaiting(target_url):
                return False
            recorded = self._handshakes.setdefault(target_url, secret)
        return hmac.compare_digest(recorded.encode(), secret.encode())

    def handshake_secret(self, target_url: str) -> str | None:
        with self._lock:
            return self._handshakes.get(target_url)

    def settle_handshake(self, target_url: str) -> None:
        """Forget the handshake secret once nothing for ``target_url`` awaits it."""
        with self._lock:
            if not self._awaiting(target_url):
                self._handshakes.pop(target_url, None)

    def _awaiting(self, target_url: str) -> bool:
        return target_url in self._expecting or any(
            r.target_url == target_url and not r.active for r in self._records.values()
        )


class SubscriptionManager:
    """create / confirm / list / delete against the remote API."""

    def __init__(self, client: DocumentApiClient, store: SubscriptionStore):
        self._client = client
        self.store = store

    def create(self, target_url: str, event: EventKind, scope: Scope) -> SubscriptionRecord:
        body = {"targetUrl": target_url, "event": event.value, **scope.as_params()}
        # the remote may call the target with its handshake before create returns
        self.store.expect_handshake(target_url)
        try:
            created = self._client.create_subscription(body)
            record = SubscriptionRecord(
                id=str(created.get("id") or created.get("webhookId") or ""),
                target_url=target_url,
                event=event.value,
                scope=scope,
            )
            if not record.id:
                raise SubscriptionApiError("create response carried no subscription id")
            self.store.put(record)
        except (httpx.HTTPStatusError, httpx.TransportError) as e:
            raise SubscriptionApiError(
                f"creating subscription for {event.value} failed: {e}",
                status_code=_status_of(e),
            ) from e
        finally:
            self.store.release_expectation(target_url)

        logger.info(
            "Created pending subscription %s: %s -> %s (%s=%s)",
            record.id,
            event.value,
            target_url,
            scope.kind.value,
            scope.identifier,
        )
        return record

    def confirm(self, subscription_id: str, secret: str) -> SubscriptionRecord:
        """Activate a pending subscription with its handshake secret.

        Raises:
            SubscriptionNotFound: unknown id, locally or remotely
            HandshakeNotAcknowledged: the handshake was not answered with ``secret``
            SubscriptionApiError: the remote activate call failed otherwise
        """
        record = self.store.get(subscription_id)
        if record is None:
            raise SubscriptionNotFound(f"unknown subscription {subscription_id}")
        if record.active:
            if record.secret is not None and hmac.compare_digest(record.secret.encode(), secret.encode()):
                return record
            raise HandshakeNotAcknowledged(f"subscription {subscription_id} is active with another secret")

        acked = self.store.handshake_secret(record.target_url)
        if acked is None or not hmac.compare_digest(acked.encode(), secret.encode()):
            raise HandshakeNotAcknowledged(
                f"handshake for {record.target_url} was not acknowledged with this secret"
            )

        try:
            self._client.activate_subscription(subscription_id, secret)
        except httpx.HTTPStatusError as e:
            if e.response.status_code in (404, 410):
                self.store.remove(subscription_id)
                self.store.settle_handshake(record.target_url)
                raise SubscriptionNotFound(f"subscription {subscription_id} no longer exists") from e
            raise SubscriptionApiError(
                f"activating subscription {subscription_id} failed",
                status_code=e.response.status_code,
            ) from e
        except httpx.TransportError as e:
            raise SubscriptionApiError(f"activating subscription {subscription_id} failed: {e}") from e

        active = replace(record, secret=secret, active=True)
        self.store.put(active)
        self.store.settle_handshake(record.target_url)
        logger.info("Subscription %s active", subscription_id)
        return active

    def confirm_pending(self, target_url: str) -> list[SubscriptionRecord]:
        """Confirm every pending subscription for ``target_url`` with its acked secret."""
        secret = self.store.handshake_secret(target_url)
        if secret is None:
            return []
        confirmed = []
        for record in self.store.pending_for(target_url):
            try:
                confirmed.append(self.confirm(record.id, secret))
            except (SubscriptionNotFound, SubscriptionApiError):
                logger.warning("Could not confirm subscription %s", record.id, exc_info=True)
        return confirmed

    def list(self, scope: Scope) -> list[SubscriptionRecord]:
        """Remote subscriptions for ``scope``, with locally known secrets attached.

        Local records the remote no longer reports are dropped (auto-deleted).
        """
        try:
            rows = self._client.list_subscriptions(scope.as_params())
        except (httpx.HTTPStatusError, httpx.TransportError) as e:
            raise SubscriptionApiError(f"listing subscriptions failed: {e}", status_code=_status_of(e)) from e

        records = []
        for row in rows:
            remote = SubscriptionRecord.from_api(row)
            if not remote.id:
                continue
            local = self.store.get(remote.id)
            if local is not None:
                remote = replace(remote, secret=local.secret)
            records.append(remote)

        remote_ids = {r.id for r in records}
        for local in self.store.in_scope(scope):
            if local.id not in remote_ids:
                logger.info("Subscription %s no longer exists remotely; forgetting it", local.id)
                self.store.remove(local.id)
                self.store.settle_handshake(local.target_url)
        return records

    def delete(self, subscription_id: str) -> None:
        """Delete a subscription. Already-deleted or unknown ids succeed silently."""
        try:
            existed = self._client.delete_subscription(subscription_id)
        except (httpx.HTTPStatusError, httpx.TransportError) as e:
            raise SubscriptionApiError(
                f"deleting subscription {subscription_id} failed", status_code=_status_of(e)
            ) from e
        removed = self.store.remove(subscription_id)
        if removed is not None:
            self.store.settle_handshake(removed.target_url)
        if existed:
            logger.info("Deleted subscription %s", subscription_id)


def _status_of(e: Exception) -> int | None:
    if isinstance(e, httpx.HTTPStatusError):
        return e.response.status_code
    return None
