"""Rate limiting configuration for the public endpoints."""

import logging
import os

from slowapi import Limiter
from slowapi.util import get_remote_address

from mailpilot.core.config import settings

logger = logging.getLogger(__name__)

IS_TESTING = os.getenv("TESTING", "").lower() in ("1", "true", "yes")


def _storage_uri() -> str:
    # Redis gives a shared budget across API replicas; memory is per process.
    if IS_TESTING or not settings.REDIS_URL:
        return "memory://"
    try:
        import redis

        client = redis.from_url(settings.REDIS_URL, socket_connect_timeout=1)
        client.ping()
        return settings.REDIS_URL
    except Exception as e:
        logger.warning("Redis unavailable for rate limiting, using in-memory: %s", e)
        return "memory://"


limiter = Limiter(
    key_func=get_remote_address,
    storage_uri=_storage_uri(),
    enabled=not IS_TESTING,
)


def webhook_limit() -> str:
    return f"{max(1, settings.RATE_LIMIT_WEBHOOK)}/minute"
