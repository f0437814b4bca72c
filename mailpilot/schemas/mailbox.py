"""Pydantic schemas for mailbox management endpoints."""

from datetime import datetime
from uuid import UUID

from pydantic import BaseModel, ConfigDict, EmailStr, Field


class MailboxConnect(BaseModel):
    """Tokens obtained by the external OAuth flow."""
    email_address: EmailStr
    access_token: str = Field(min_length=1)
    refresh_token: str = Field(min_length=1)
    expires_in: int | None = None
    scopes: list[str] | None = None
    display_name: str | None = None


class MailboxRead(BaseModel):
    """Mailbox status response."""
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    email_address: str
    display_name: str | None
    is_enabled: bool
    history_cursor: int | None
    watch_channel_id: str | None
    watch_expires_at: datetime | None
    watch_last_renewed_at: datetime | None
    watch_last_error: str | None
    last_reconciled_at: datetime | None
    last_sync_error: str | None
    credential_valid: bool = False
    reauthorization_required: bool = False


class WatchRead(BaseModel):
    cursor: int | None
    channel_id: str
    expires_at: datetime | None


class ReconcileRead(BaseModel):
    new_inbound_events: int
    new_cursor: int | None
    rebaselined: bool
    outcomes: dict[str, str]


class ThreadSummary(BaseModel):
    thread_id: str
    last_message_id: str | None
    subject: str
    sender: str
    snippet: str
    last_message_ms: int
    message_count: int
    dispatch_status: str | None = None


class ThreadListResponse(BaseModel):
    items: list[ThreadSummary]
    stale: bool = False


class ThreadMessageRead(BaseModel):
    gmail_id: str
    sender: str
    subject: str
    body: str
    internal_date_ms: int


class ThreadDetailResponse(BaseModel):
    thread_id: str
    messages: list[ThreadMessageRead]


class ThreadReplyCreate(BaseModel):
    """Operator reply; an omitted text is drafted by the completion service."""
    reply_text: str | None = Field(default=None, max_length=20000)


class ThreadReplyRead(BaseModel):
    dispatch_log_id: UUID
    status: str
    gmail_message_id: str | None
    recipient_email: str
    reply_text: str
    generated: bool


class TrackingStatsRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    total_sent: int
    total_opened: int
    total_clicked: int
    opened_today: int
    opened_last_7_days: int
    open_rate: float
