"""Result reconciliation — re-fetch authoritative document state by identifier.

Webhook bodies carry status metadata only. Every event leads here: fetch the
document, compare it with what has already been observed, and fire
application side effects at most once per terminal transition.

Provides:
- DocumentState: snapshot returned by a fetch
- reconcile(): one fetch, no retry, typed transient/permanent failures
- ReconcileLedger: remembers which terminal states already fired effects
- Reconciler: reconcile() + ledger + per-identifier serialization
- ReconcileScheduler: background re-invocation with backoff until terminal
"""

from __future__ import annotations

import logging
import threading
from contextlib import contextmanager
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Iterator

from dochooks.alerts import AlertClass, Alerter
from dochooks.errors import PermanentFetchError, TransientFetchError
from dochooks.retry import compute_delay

logger = logging.getLogger(__name__)

Version = int | str


class DocumentStatus(str, Enum):
    PROCESSING = "processing"
    READY = "ready"
    FAILED = "failed"


@dataclass(frozen=True)
class DocumentState:
    """Remote document state at fetch time. Never cached past one pass."""

    identifier: str
    ready: bool = False
    failed: bool = False
    data: Any = None
    version: Version | None = None

    @property
    def status(self) -> DocumentStatus:
        # failed wins: a failed document needs a fresh submission
        if self.failed:
            return DocumentStatus.FAILED
        if self.ready:
            return DocumentStatus.READY
        return DocumentStatus.PROCESSING

    @property
    def terminal(self) -> bool:
        return self.status is not DocumentStatus.PROCESSING

    @classmethod
    def from_api(cls, identifier: str, body: dict[str, Any]) -> DocumentState:
        """Build from a document API response (``data`` or ``parsed`` holds results)."""
        data = body.get("data")
        if data is None:
            data = body.get("parsed")
        return cls(
            identifier=str(body.get("identifier") or body.get("documentId") or identifier),
            ready=bool(body.get("ready", False)),
            failed=bool(body.get("failed", False)),
            data=data,
            version=body.get("version"),
        )


Fetch = Callable[[str], DocumentState]
Effect = Callable[[DocumentState], None]


def reconcile(identifier: str, fetch: Fetch) -> DocumentState:
    """Fetch the current remote state for ``identifier``.

    Calls ``fetch`` exactly once. Retrying is the caller's job.

    Raises:
        TransientFetchError: timeout, connection error, 429 or 5xx
        PermanentFetchError: 404 or another non-retryable response
    """
    state = fetch(identifier)
    logger.debug("Reconciled %s: status=%s version=%s", identifier, state.status.value, state.version)
    return state


class ReconcileLedger:
    """Terminal states that have already fired side effects, keyed by identifier.

    With a version marker on both sides, a state fires once per strictly
    newer version. Markers that both read as numbers compare numerically;
    other string markers sort as text (ISO-8601 timestamps order correctly).
    Without a version, a state fires once per terminal status, so a document
    that goes from ready to failed fires on_failed once.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._seen: dict[str, tuple[DocumentStatus, Version | None]] = {}

    def should_fire(self, state: DocumentState) -> bool:
        if not state.terminal:
            return False
        with self._lock:
            previous = self._seen.get(state.identifier)
        if previous is None:
            return True
        seen_status, seen_version = previous
        if state.version is None or seen_version is None:
            return state.status is not seen_status
        return _newer(state.version, seen_version)

    def record(self, state: DocumentState) -> None:
        with self._lock:
            self._seen[state.identifier] = (state.status, state.version)

    def observed(self, identifier: str) -> DocumentStatus | None:
        with self._lock:
            entry = self._seen.get(identifier)
        return entry[0] if entry else None


def _as_number(version: Version) -> float | None:
    if isinstance(version, bool):
        return None
    try:
        return float(version)
    except (TypeError, ValueError):
        return None


def _newer(version: Version, seen: Version) -> bool:
    a, b = _as_number(version), _as_number(seen)
    if a is not None and b is not None:
        return a > b
    return str(version) > str(seen)


class Reconciler:
    """Runs reconcile() and fires on_ready/on_failed at most once per transition."""

    def __init__(
        self,
        fetch: Fetch,
        ledger: ReconcileLedger | None = None,
        on_ready: Effect | None = None,
        on_failed: Effect | None = None,
    ):
        self._fetch = fetch
        self.ledger = ledger or ReconcileLedger()
        self._on_ready = on_ready
        self._on_failed = on_failed
        # identifier -> (lock, passes holding or waiting on it)
        self._locks: dict[str, tuple[threading.Lock, int]] = {}
        self._locks_guard = threading.Lock()

    @property
    def active_identifiers(self) -> list[str]:
        """Identifiers with a pass running or waiting."""
        with self._locks_guard:
            return list(self._locks)

    @contextmanager
    def _serialized(self, identifier: str) -> Iterator[None]:
        with self._locks_guard:
            lock, users = self._locks.get(identifier, (None, 0))
            lock = lock or threading.Lock()
            self._locks[identifier] = (lock, users + 1)
        try:
            with lock:
                yield
        finally:
            with self._locks_guard:
                users = self._locks[identifier][1] - 1
                if users:
                    self._locks[identifier] = (lock, users)
                else:
                    del self._locks[identifier]

    def run(self, identifier: str) -> DocumentState:
        """One reconciliation pass, serialized per identifier.

        Effects fire before the ledger is updated, so an effect that raises
        is retried on the next pass instead of being lost.
        """
        with self._serialized(identifier):
            state = reconcile(identifier, self._fetch)
            if self.ledger.should_fire(state):
                effect = self._on_failed if state.failed else self._on_ready
                if effect is not None:
                    logger.info("Document %s reached %s; firing effect", identifier, state.status.value)
                    effect(state)
                self.ledger.record(state)
            return state


@dataclass(frozen=True)
class ReconcilePolicy:
    """Bounded backoff for background reconciliation."""

    max_attempts: int = 8
    base_delay: float = 2.0
    max_delay: float = 120.0
    jitter: float = 0.3


class ReconcileScheduler:
    """Background re-invocation of a Reconciler until a terminal state.

    ``schedule()`` only queues; ``drain()`` runs queued jobs and is meant to be
    handed to the host's background-task runner (FastAPI BackgroundTasks), so
    the scheduler owns no threads. Schedules for an identifier that is queued
    or already running are coalesced.
    """

    def __init__(
        self,
        reconciler: Reconciler,
        policy: ReconcilePolicy | None = None,
        alerter: Alerter | None = None,
        wait: Callable[[float], bool] | None = None,
    ):
        self._reconciler = reconciler
        self._policy = policy or ReconcilePolicy()
        self._alerter = alerter or Alerter()
        self._stop = threading.Event()
        self._wait = wait or self._stop.wait
        self._lock = threading.Lock()
        self._pending: dict[str, None] = {}
        self._in_flight: set[str] = set()
        self._rerun: set[str] = set()

    @property
    def pending(self) -> list[str]:
        with self._lock:
            return list(self._pending)

    @property
    def stopped(self) -> bool:
        return self._stop.is_set()

    def schedule(self, identifier: str) -> bool:
        """Queue ``identifier`` for reconciliation. Returns False if coalesced."""
        with self._lock:
            if identifier in self._in_flight:
                self._rerun.add(identifier)
                return False
            if identifier in self._pending:
                return False
            self._pending[identifier] = None
        logger.debug("Scheduled reconciliation for %s", identifier)
        return True

    def drain(self) -> None:
        """Run queued jobs until the queue is empty or the scheduler stops."""
        while not self._stop.is_set():
            with self._lock:
                if not self._pending:
                    return
                identifier = next(iter(self._pending))
                del self._pending[identifier]
                self._in_flight.add(identifier)
            try:
                self.run_job(identifier)
            finally:
                with self._lock:
                    self._in_flight.discard(identifier)
                    if identifier in self._rerun:
                        # a delivery arrived after the job stopped refetching
                        self._rerun.discard(identifier)
                        self._pending[identifier] = None

    def shutdown(self) -> None:
        """Abandon waiting jobs. Safe: every job can be redone by refetching."""
        self._stop.set()

    def _take_rerun(self, identifier: str) -> bool:
        with self._lock:
            if identifier in self._rerun:
                self._rerun.discard(identifier)
                return True
            return False

    def run_job(self, identifier: str) -> DocumentState | None:
        """Reconcile with backoff until terminal, permanent error or attempts run out.

        Returns the terminal state, or None if the job gave up or was abandoned.
        """
        policy = self._policy
        delay = 0.0
        for attempt in range(policy.max_attempts):
            if self._stop.is_set() or (delay and self._wait(delay)):
                logger.info("Shutdown requested; abandoning reconciliation of %s", identifier)
                return None
            try:
                state = self._reconciler.run(identifier)
            except TransientFetchError as e:
                logger.warning(
                    "Transient fetch failure for %s (attempt %d/%d, status=%s): %s",
                    identifier,
                    attempt + 1,
                    policy.max_attempts,
                    e.status_code,
                    e,
                )
            except PermanentFetchError as e:
                self._alerter.emit(
                    AlertClass.FETCH_PERMANENT,
                    "document vanished",
                    identifier=identifier,
                    status=e.status_code,
                )
                return None
            except Exception as e:
                if self._stop.is_set():
                    logger.info(
                        "Shutdown requested; abandoning reconciliation of %s (%s)",
                        identifier,
                        type(e).__name__,
                    )
                    return None
                logger.exception("Reconciliation effect failed for %s", identifier)
                self._alerter.emit(
                    AlertClass.HANDLER_FAILURE,
                    "reconciliation effect raised",
                    identifier=identifier,
                    error=type(e).__name__,
                )
                return None
            else:
                if state.terminal:
                    if attempt + 1 < policy.max_attempts and self._take_rerun(identifier):
                        delay = 0.0
                        continue
                    return state
                logger.info(
                    "Document %s still processing (attempt %d/%d)",
                    identifier,
                    attempt + 1,
                    policy.max_attempts,
                )
            delay = compute_delay(attempt, policy.base_delay, policy.max_delay, policy.jitter)

        self._alerter.emit(
            AlertClass.RECONCILE_EXHAUSTED,
            "no terminal state within attempt budget",
            identifier=identifier,
            attempts=policy.max_attempts,
        )
        return None
