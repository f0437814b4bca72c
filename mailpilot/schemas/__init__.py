"""Pydantic schemas for API request/response models."""

from mailpilot.schemas.mailbox import (
    MailboxConnect,
    MailboxRead,
    ReconcileRead,
    ThreadDetailResponse,
    ThreadListResponse,
    ThreadMessageRead,
    ThreadReplyCreate,
    ThreadReplyRead,
    ThreadSummary,
    TrackingStatsRead,
    WatchRead,
)

__all__ = [
    "MailboxConnect",
    "MailboxRead",
    "ReconcileRead",
    "ThreadDetailResponse",
    "ThreadListResponse",
    "ThreadMessageRead",
    "ThreadReplyCreate",
    "ThreadReplyRead",
    "ThreadSummary",
    "TrackingStatsRead",
    "WatchRead",
]
