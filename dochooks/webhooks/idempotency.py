"""Webhook idempotency — Redis-based delivery deduplication.

Security contract:
- Tracks event ids in Redis with 24h TTL (the sender retries for about a day)
- Duplicate deliveries are acknowledged with 200 (sender retries on errors)
- Key pattern: dochooks:webhook:seen:{scope}:{event_id}
- If Redis is down, falls back to allowing (fail-open; reconciliation is
  idempotent, so a duplicate only costs a refetch)
"""

from __future__ import annotations

import logging

import redis

logger = logging.getLogger(__name__)

_DEDUP_TTL_SECONDS = 86400  # 24 hours

_KEY_PREFIX = "dochooks:webhook:seen"


class DeliveryLedger:
    """Remembers which event ids have already been delivered."""

    def __init__(self, client: redis.Redis, ttl: int = _DEDUP_TTL_SECONDS):
        self._redis = client
        self._ttl = ttl

    @classmethod
    def from_url(cls, redis_url: str) -> DeliveryLedger:
        return cls(redis.from_url(redis_url, decode_responses=True))

    @staticmethod
    def key(scope: str, event_id: str) -> str:
        return f"{_KEY_PREFIX}:{scope}:{event_id}"

    def is_duplicate(self, scope: str, event_id: str) -> bool:
        """Atomically check-and-mark an event id (SET NX).

        Returns:
            True if this event id was already seen
        """
        if not event_id:
            return False

        try:
            was_set = self._redis.set(self.key(scope, event_id), "1", nx=True, ex=self._ttl)
        except redis.RedisError:
            logger.warning(
                "Redis unavailable for webhook dedup — allowing %s/%s",
                scope,
                event_id,
                exc_info=True,
            )
            return False

        if not was_set:
            logger.info("Duplicate webhook delivery: %s/%s", scope, event_id)
            return True
        return False