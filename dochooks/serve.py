"""ASGI entry point: ``uvicorn dochooks.serve:app``."""

from __future__ import annotations

import redis

from dochooks.app import configure_logging, create_app
from dochooks.config import Settings

settings = Settings.from_env()
configure_logging(settings.log_level)

app = create_app(
    settings,
    redis_client=redis.from_url(settings.redis_url, decode_responses=True),
)
