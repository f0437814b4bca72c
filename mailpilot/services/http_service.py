"""HTTP helpers with retry/backoff for integrations."""

from __future__ import annotations

import asyncio
import logging
import random
from email.utils import parsedate_to_datetime
from datetime import datetime, timezone
from typing import Awaitable, Callable

import httpx

logger = logging.getLogger(__name__)

DEFAULT_RETRY_STATUSES = {429, 500, 502, 503, 504}


def parse_retry_after(value: str | None, *, now: datetime | None = None) -> float | None:
    """Parse a Retry-After header (delta-seconds or HTTP-date) into seconds."""
    if not value:
        return None
    value = value.strip()
    try:
        seconds = float(value)
    except ValueError:
        try:
            when = parsedate_to_datetime(value)
        except (TypeError, ValueError):
            return None
        if when.tzinfo is None:
            when = when.replace(tzinfo=timezone.utc)
        seconds = (when - (now or datetime.now(timezone.utc))).total_seconds()
    return max(0.0, seconds)


def throttle_delay(attempt: int, retry_after: float | None, *, cap: float) -> float:
    """Delay before retry number ``attempt`` (0-based) of a throttled call.

    An explicit Retry-After wins; otherwise exponential 1, 2, 4... seconds
    capped at ``cap``.
    """
    if retry_after is not None:
        return retry_after
    return float(min(2**attempt, cap))


async def request_with_retries(
    request_fn: Callable[[], Awaitable[httpx.Response]],
    *,
    max_attempts: int = 3,
    base_delay: float = 0.5,
    max_delay: float = 4.0,
    retry_statuses: set[int] | None = None,
) -> httpx.Response:
    """Execute an HTTP request with exponential backoff retries."""
    statuses = retry_statuses or DEFAULT_RETRY_STATUSES

    for attempt in range(max_attempts):
        try:
            response = await request_fn()
        except httpx.RequestError as exc:
            if attempt >= max_attempts - 1:
                raise
            delay = min(max_delay, base_delay * (2**attempt))
            if delay:
                delay = delay + random.uniform(0, delay / 2)
            logger.warning("HTTP request failed, retrying", exc_info=exc)
            if delay:
                await asyncio.sleep(delay)
            continue

        if response.status_code in statuses and attempt < max_attempts - 1:
            retry_after = parse_retry_after(response.headers.get("retry-after"))
            if retry_after is not None:
                delay = min(retry_after, max_delay)
            else:
                delay = min(max_delay, base_delay * (2**attempt))
                if delay:
                    delay = delay + random.uniform(0, delay / 2)
            logger.warning(
                "HTTP request returned %s, retrying", response.status_code
            )
            if delay:
                await asyncio.sleep(delay)
            continue

        return response

    return response
