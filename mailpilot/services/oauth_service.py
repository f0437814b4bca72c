"""Google OAuth token refresh for connected mailboxes."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone

import httpx

from mailpilot.core.config import settings
from mailpilot.services.errors import ReauthorizationRequired, UpstreamError
from mailpilot.services.http_service import request_with_retries

logger = logging.getLogger(__name__)

GOOGLE_TOKEN_URL = "https://oauth2.googleapis.com/token"
GMAIL_SCOPES = [
    "https://www.googleapis.com/auth/gmail.modify",
    "https://www.googleapis.com/auth/gmail.send",
]


def _now_utc() -> datetime:
    """Timezone-aware UTC timestamp."""
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class RefreshResult:
    """Outcome of one token refresh. The caller persists it."""

    access_token: str
    expires_at: datetime | None
    refresh_token: str | None = None  # only set when Google rotated it
    scopes: list[str] | None = None


def parse_token_response(tokens: dict, *, now: datetime | None = None) -> RefreshResult:
    access_token = tokens.get("access_token")
    if not access_token:
        raise UpstreamError(200, "token response missing access_token")
    expires_at = None
    expires_in = tokens.get("expires_in")
    if expires_in:
        expires_at = (now or _now_utc()) + timedelta(seconds=int(expires_in))
    scope = tokens.get("scope")
    scopes = [item for item in str(scope).split() if item] if scope else None
    return RefreshResult(
        access_token=str(access_token),
        expires_at=expires_at,
        refresh_token=tokens.get("refresh_token") or None,
        scopes=scopes,
    )


async def refresh_gmail_token(
    refresh_token: str,
    *,
    client: httpx.AsyncClient | None = None,
) -> RefreshResult:
    """Exchange a refresh token for a new access token.

    ``invalid_grant`` (revoked or expired refresh token) raises
    ReauthorizationRequired; the mailbox has to be reconnected.
    """

    async def _post(http: httpx.AsyncClient) -> httpx.Response:
        return await request_with_retries(
            lambda: http.post(
                GOOGLE_TOKEN_URL,
                data={
                    "client_id": settings.GOOGLE_CLIENT_ID,
                    "client_secret": settings.GOOGLE_CLIENT_SECRET,
                    "refresh_token": refresh_token,
                    "grant_type": "refresh_token",
                },
            )
        )

    if client is not None:
        response = await _post(client)
    else:
        async with httpx.AsyncClient(timeout=settings.GMAIL_HTTP_TIMEOUT_SECONDS) as http:
            response = await _post(http)

    if response.status_code in (400, 401):
        error = None
        try:
            error = response.json().get("error")
        except Exception:
            error = None
        if error in ("invalid_grant", "unauthorized_client") or response.status_code == 401:
            raise ReauthorizationRequired(f"Google token refresh rejected: {error or 'unauthorized'}")
    if response.status_code >= 400:
        logger.error("Gmail token refresh failed with status %s", response.status_code)
        raise UpstreamError(response.status_code, "token refresh failed")
    return parse_token_response(response.json())
