"""Error taxonomy shared by services, routers and jobs."""

from __future__ import annotations


class MailpilotError(Exception):
    """Base class for errors raised by mailpilot services."""


class UpstreamThrottled(MailpilotError):
    """Gmail kept answering 429 after the retry ceiling."""

    def __init__(
        self,
        message: str = "Gmail rate limit exceeded",
        *,
        retry_after: float | None = None,
    ):
        super().__init__(message)
        self.retry_after = retry_after


class UpstreamError(MailpilotError):
    """Gmail answered with a non-retryable error."""

    def __init__(self, status_code: int, detail: str | None = None):
        super().__init__(f"Gmail API error {status_code}: {detail or 'unknown error'}")
        self.status_code = status_code
        self.detail = detail


class HistoryExpired(UpstreamError):
    """startHistoryId is older than Gmail keeps (history.list returned 404)."""


class ReauthorizationRequired(MailpilotError):
    """The mailbox credential was rejected and can no longer be used."""


class ThreadIntegrityError(MailpilotError):
    """A thread snapshot cannot be replied to (empty, or missing Message-ID)."""


class CompletionError(MailpilotError):
    """The completion service failed or returned an unusable answer."""


class DispatchError(MailpilotError):
    """Handing a built message to Gmail failed."""
