"""Rate-limited Gmail API client.

Every upstream read and write goes through ``GmailFetcher._request``:
429 responses are retried with backoff (Retry-After first, then
exponential), 401 fails fast as ``ReauthorizationRequired``. List views
can additionally fall back to the last cached answer while throttled.
"""

from __future__ import annotations

import base64
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Callable

import httpx

from mailpilot.core.config import settings
from mailpilot.services.errors import (
    HistoryExpired,
    ReauthorizationRequired,
    UpstreamError,
    UpstreamThrottled,
)
from mailpilot.services.fetch_cache import TTLCache
from mailpilot.services.http_service import parse_retry_after, throttle_delay

logger = logging.getLogger(__name__)

GMAIL_API_BASE = "https://gmail.googleapis.com/gmail/v1/users/me"
_GMAIL_WATCH_URL = f"{GMAIL_API_BASE}/watch"
_GMAIL_STOP_URL = f"{GMAIL_API_BASE}/stop"
_GMAIL_PROFILE_URL = f"{GMAIL_API_BASE}/profile"
_GMAIL_HISTORY_URL = f"{GMAIL_API_BASE}/history"
_GMAIL_THREADS_URL = f"{GMAIL_API_BASE}/threads"
_GMAIL_THREAD_GET_URL = f"{GMAIL_API_BASE}/threads/{{thread_id}}"
_GMAIL_MESSAGE_GET_URL = f"{GMAIL_API_BASE}/messages/{{message_id}}"
_GMAIL_SEND_URL = f"{GMAIL_API_BASE}/messages/send"


@dataclass
class HistoryDiff:
    """Aggregated users.history.list pages starting at one cursor."""

    records: list[dict] = field(default_factory=list)
    history_id: int | None = None

    def added_messages(self) -> list[dict]:
        """messagesAdded entries in history order; other change kinds are ignored."""
        out: list[dict] = []
        seen: set[str] = set()
        for record in self.records:
            for item in record.get("messagesAdded") or []:
                message = item.get("message") or {}
                message_id = message.get("id")
                if not message_id or message_id in seen:
                    continue
                seen.add(message_id)
                out.append(message)
        return out


def parse_history_id(value: object | None) -> int | None:
    if value is None:
        return None
    try:
        return int(str(value))
    except (TypeError, ValueError):
        return None


def _error_detail(response: httpx.Response) -> str | None:
    try:
        payload = response.json()
        return payload.get("error", {}).get("message")
    except Exception:
        return response.text or None


class GmailFetcher:
    """Gmail REST calls for one access token."""

    def __init__(
        self,
        access_token: str,
        *,
        http_client: httpx.Client | None = None,
        sleep: Callable[[float], None] = time.sleep,
        max_retries: int | None = None,
        backoff_cap: float | None = None,
    ) -> None:
        self._access_token = access_token
        self._owns_client = http_client is None
        self._client = http_client or httpx.Client(timeout=settings.GMAIL_HTTP_TIMEOUT_SECONDS)
        self._sleep = sleep
        self.max_retries = settings.GMAIL_MAX_RETRIES if max_retries is None else max_retries
        self.backoff_cap = settings.GMAIL_BACKOFF_CAP_SECONDS if backoff_cap is None else backoff_cap

    def close(self) -> None:
        if self._owns_client:
            self._client.close()

    def __enter__(self) -> "GmailFetcher":
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()

    # ------------------------------------------------------------------
    # Transport
    # ------------------------------------------------------------------

    def _request(
        self,
        method: str,
        url: str,
        *,
        params: dict | list[tuple[str, str]] | None = None,
        json: dict | None = None,
    ) -> dict:
        attempt = 0
        while True:
            response = self._client.request(
                method,
                url,
                headers={"Authorization": f"Bearer {self._access_token}"},
                params=params,
                json=json,
            )
            if response.status_code == 429:
                retry_after = parse_retry_after(response.headers.get("retry-after"))
                if attempt >= self.max_retries:
                    raise UpstreamThrottled(retry_after=retry_after)
                delay = throttle_delay(attempt, retry_after, cap=self.backoff_cap)
                logger.warning(
                    "Gmail rate limited, retrying in %.1fs (attempt %s/%s)",
                    delay,
                    attempt + 1,
                    self.max_retries,
                )
                self._sleep(delay)
                attempt += 1
                continue
            if response.status_code == 401:
                raise ReauthorizationRequired(
                    f"Gmail rejected credential: {_error_detail(response) or 'unauthorized'}"
                )
            if response.status_code >= 400:
                raise UpstreamError(response.status_code, _error_detail(response))
            if not response.content:
                return {}
            result = response.json()
            if not isinstance(result, dict):
                raise UpstreamError(response.status_code, "response was not an object")
            return result

    # ------------------------------------------------------------------
    # Watch
    # ------------------------------------------------------------------

    def watch(self, *, topic_name: str, label_ids: list[str] | None = None) -> dict:
        payload: dict[str, object] = {"topicName": topic_name}
        if label_ids:
            payload["labelIds"] = label_ids
            payload["labelFilterBehavior"] = "INCLUDE"
        return self._request("POST", _GMAIL_WATCH_URL, json=payload)

    def stop(self) -> None:
        self._request("POST", _GMAIL_STOP_URL)

    def get_profile(self) -> dict:
        return self._request("GET", _GMAIL_PROFILE_URL)

    # ------------------------------------------------------------------
    # History / threads / messages
    # ------------------------------------------------------------------

    def list_history(self, start_history_id: int) -> HistoryDiff:
        """All history pages since ``start_history_id``.

        Raises HistoryExpired when Gmail no longer has that cursor.
        """
        diff = HistoryDiff()
        page_token: str | None = None
        while True:
            params: dict[str, object] = {
                "startHistoryId": str(start_history_id),
                "historyTypes": "messageAdded",
                "maxResults": 500,
            }
            if page_token:
                params["pageToken"] = page_token
            try:
                payload = self._request("GET", _GMAIL_HISTORY_URL, params=params)
            except UpstreamError as exc:
                if exc.status_code == 404:
                    raise HistoryExpired(404, exc.detail) from exc
                raise
            diff.records.extend(payload.get("history") or [])
            history_id = parse_history_id(payload.get("historyId"))
            if history_id is not None:
                diff.history_id = history_id
            page_token = payload.get("nextPageToken")
            if not page_token:
                return diff

    def get_thread(self, thread_id: str) -> dict:
        return self._request(
            "GET",
            _GMAIL_THREAD_GET_URL.format(thread_id=thread_id),
            params={"format": "full"},
        )

    def get_thread_metadata(self, thread_id: str) -> dict:
        return self._request(
            "GET",
            _GMAIL_THREAD_GET_URL.format(thread_id=thread_id),
            params=[
                ("format", "metadata"),
                ("metadataHeaders", "From"),
                ("metadataHeaders", "Subject"),
                ("metadataHeaders", "Date"),
            ],
        )

    def list_threads(self, *, query: str = "is:inbox", max_results: int = 25) -> list[dict]:
        payload = self._request(
            "GET",
            _GMAIL_THREADS_URL,
            params={"q": query, "maxResults": max_results},
        )
        return list(payload.get("threads") or [])

    def get_message(self, message_id: str, *, fmt: str = "minimal") -> dict:
        return self._request(
            "GET",
            _GMAIL_MESSAGE_GET_URL.format(message_id=message_id),
            params={"format": fmt},
        )

    def send_raw(self, raw_message: bytes, *, thread_id: str | None = None) -> dict:
        """Send RFC-5322 bytes, optionally into an existing thread."""
        payload: dict[str, Any] = {
            "raw": base64.urlsafe_b64encode(raw_message).decode("ascii"),
        }
        if thread_id:
            payload["threadId"] = thread_id
        result = self._request("POST", _GMAIL_SEND_URL, json=payload)
        if not result.get("id"):
            raise UpstreamError(200, "send response missing message id")
        return result


def fetch_with_stale_fallback(
    cache: TTLCache,
    key: str,
    fetch: Callable[[], Any],
) -> tuple[Any, bool]:
    """Serve a list view from cache, refreshing it when stale.

    Returns ``(value, is_stale)``. When the refresh is throttled the last
    cached value is returned instead; with nothing cached the throttle error
    propagates.
    """
    fresh = cache.get_fresh(key)
    if fresh is not None:
        return fresh, False
    try:
        value = fetch()
    except UpstreamThrottled:
        stale = cache.get_stale(key)
        if stale is None:
            raise
        logger.warning("Gmail throttled; serving stale cache for %s", key)
        return stale, True
    cache.set(key, value)
    return value, False
