"""Redis Streams publisher for operator-facing events.

Messages are added via XADD with an auto-generated stream ID (*).
Publishing is fire-and-forget: if Redis is unreachable the message is
dropped and a warning logged (fail-open).
"""

from __future__ import annotations

import json
import logging
import time
import uuid
from typing import Any

import redis

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Stream names
# ---------------------------------------------------------------------------

STREAM_ALERTS = "dochooks:alerts"

_TRIM_POLICIES: dict[str, int] = {
    STREAM_ALERTS: 5000,
}


class EventBus:
    """Thin XADD wrapper around an injected Redis client."""

    def __init__(self, client: redis.Redis):
        self._redis = client

    @classmethod
    def from_url(cls, redis_url: str) -> EventBus:
        return cls(redis.from_url(redis_url, decode_responses=True))

    def publish(
        self,
        stream: str,
        msg_type: str,
        payload: dict[str, Any],
        *,
        source: str = "",
    ) -> str | None:
        """Publish a message to a Redis Stream.

        Never raises. Returns the stream entry ID or None on failure.
        """
        entry = {
            "msg_id": uuid.uuid4().hex[:16],
            "msg_type": msg_type,
            "source": source,
            "ts": time.strftime("%Y-%m-%dT%H:%M:%S+00:00", time.gmtime()),
            "payload": json.dumps(payload, default=str),
        }
        maxlen = _TRIM_POLICIES.get(stream, 5000)

        try:
            return self._redis.xadd(stream, entry, maxlen=maxlen, approximate=True)
        except redis.RedisError:
            logger.warning(
                "Bus publish failed: stream=%s type=%s", stream, msg_type,
                exc_info=True,
            )
            return None
