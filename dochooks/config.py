"""Environment-driven settings.

Security contract:
- Webhook secrets come from env vars only, never from request data
- Missing secret for a scope -> verification always fails (fail-closed)
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field

logger = logging.getLogger(__name__)

DEFAULT_SCOPE = "default"

# Deliveries older than this many seconds are rejected as replays
DEFAULT_SIGNATURE_TOLERANCE = 600


def _env_float(name: str, default: float) -> float:
    raw = os.environ.get(name, "")
    if not raw:
        return default
    try:
        return float(raw)
    except ValueError:
        logger.warning("Ignoring non-numeric %s=%r, using %s", name, raw, default)
        return default


def _env_int(name: str, default: int) -> int:
    return int(_env_float(name, float(default)))


def parse_scope_secrets(raw: str) -> dict[str, bytes]:
    """Parse ``scope=secret,scope2=secret2`` into a scope -> secret mapping.

    Entries without ``=`` or with an empty secret are skipped.
    """
    secrets: dict[str, bytes] = {}
    for item in raw.split(","):
        scope, sep, secret = item.strip().partition("=")
        scope = scope.strip()
        secret = secret.strip()
        if not sep or not scope or not secret:
            continue
        secrets[scope] = secret.encode("utf-8")
    return secrets


@dataclass(frozen=True)
class Settings:
    """Runtime configuration for the receiver, client and reconciler."""

    api_base_url: str = "http://localhost:8000"
    api_key: str = ""
    public_base_url: str = ""
    webhook_secrets: dict[str, bytes] = field(default_factory=dict)
    signature_tolerance: int = DEFAULT_SIGNATURE_TOLERANCE
    http_timeout: float = 30.0
    reconcile_max_attempts: int = 8
    reconcile_base_delay: float = 2.0
    reconcile_max_delay: float = 120.0
    redis_url: str = "redis://localhost:6379/0"
    log_level: str = "INFO"

    @classmethod
    def from_env(cls) -> Settings:
        secrets = parse_scope_secrets(os.environ.get("DOCHOOKS_WEBHOOK_SECRETS", ""))
        default_secret = os.environ.get("DOCHOOKS_WEBHOOK_SECRET", "")
        if default_secret:
            secrets.setdefault(DEFAULT_SCOPE, default_secret.encode("utf-8"))
        return cls(
            api_base_url=os.environ.get("DOCHOOKS_API_BASE_URL", cls.api_base_url).rstrip("/"),
            api_key=os.environ.get("DOCHOOKS_API_KEY", ""),
            public_base_url=os.environ.get("DOCHOOKS_PUBLIC_BASE_URL", "").rstrip("/"),
            webhook_secrets=secrets,
            signature_tolerance=_env_int("DOCHOOKS_SIGNATURE_TOLERANCE", DEFAULT_SIGNATURE_TOLERANCE),
            http_timeout=_env_float("DOCHOOKS_HTTP_TIMEOUT", cls.http_timeout),
            reconcile_max_attempts=_env_int("DOCHOOKS_RECONCILE_MAX_ATTEMPTS", cls.reconcile_max_attempts),
            reconcile_base_delay=_env_float("DOCHOOKS_RECONCILE_BASE_DELAY", cls.reconcile_base_delay),
            reconcile_max_delay=_env_float("DOCHOOKS_RECONCILE_MAX_DELAY", cls.reconcile_max_delay),
            redis_url=os.environ.get("REDIS_URL", cls.redis_url),
            log_level=os.environ.get("LOG_LEVEL", cls.log_level).upper(),
        )

    def secret_for(self, scope: str | None) -> bytes:
        """Signing secret for a scope, or b"" when none is configured."""
        secret = self.webhook_secrets.get(scope or DEFAULT_SCOPE, b"")
        if not secret:
            logger.warning("No webhook secret configured for scope %r; rejecting", scope or DEFAULT_SCOPE)
        return secret
