"""Backoff helpers for calls to the document API.

``retry_with_backoff`` wraps the subscription calls. Document fetches are not
retried here: the reconcile scheduler runs its own loop and shares
``compute_delay`` with this module.
"""

from __future__ import annotations

import functools
import logging
import random
import time
from typing import Any, Callable

import httpx

from dochooks.errors import TRANSIENT_STATUS_CODES

logger = logging.getLogger(__name__)


def _retry_reason(exc: Exception) -> tuple[str, httpx.Response | None] | None:
    """Why ``exc`` is worth retrying, or None when it is not."""
    if isinstance(exc, httpx.HTTPStatusError):
        status = exc.response.status_code
        if status in TRANSIENT_STATUS_CODES:
            return f"HTTP {status}", exc.response
        return None
    if isinstance(exc, httpx.TransportError):
        return type(exc).__name__, None
    return None


def retry_with_backoff(
    max_retries: int = 3,
    base_delay: float = 1.0,
    max_delay: float = 30.0,
    jitter: float = 0.3,
    sleep: Callable[[float], None] | None = None,
) -> Callable:
    """Retry an httpx call on 408/425/429/5xx responses and transport errors.

    ``sleep`` defaults to ``time.sleep`` looked up at call time.
    """

    def decorator(fn: Callable) -> Callable:
        @functools.wraps(fn)
        def wrapper(*args: Any, **kwargs: Any) -> Any:
            attempt = 0
            while True:
                try:
                    return fn(*args, **kwargs)
                except (httpx.HTTPStatusError, httpx.TransportError) as e:
                    reason = _retry_reason(e)
                    if reason is None or attempt >= max_retries:
                        raise
                    cause, response = reason
                    delay = compute_delay(attempt, base_delay, max_delay, jitter, response)
                    attempt += 1
                    logger.warning(
                        "%s failed (%s); retry %d/%d in %.1fs",
                        fn.__name__,
                        cause,
                        attempt,
                        max_retries,
                        delay,
                    )
                    (sleep or time.sleep)(delay)

        return wrapper

    return decorator


def compute_delay(
    attempt: int,
    base_delay: float,
    max_delay: float,
    jitter: float,
    response: httpx.Response | None = None,
) -> float:
    """Delay before retry ``attempt`` (0-based): base * 2^attempt, capped, jittered.

    A numeric Retry-After header on ``response`` wins over the computed value.
    Never below 0.1s.
    """
    retry_after = response.headers.get("Retry-After") if response is not None else None
    if retry_after:
        try:
            return min(float(retry_after), max_delay)
        except ValueError:
            logger.debug("Ignoring non-numeric Retry-After %r", retry_after)

    capped = min(base_delay * 2**attempt, max_delay)
    spread = capped * jitter
    return max(0.1, capped + random.uniform(-spread, spread))
