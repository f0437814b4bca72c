"""SQLAlchemy ORM models."""

from __future__ import annotations

import uuid
from datetime import datetime, timezone

from sqlalchemy import (
    JSON,
    BigInteger,
    Boolean,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    Uuid,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from mailpilot.db.base import Base
from mailpilot.db.enums import (
    DEFAULT_DISPATCH_STATUS,
    DEFAULT_JOB_STATUS,
    DispatchAction,
    DispatchKind,
    ReceiptState,
)


def _now_utc() -> datetime:
    return datetime.now(timezone.utc)


# =============================================================================
# Mailboxes
# =============================================================================


class MailboxWatch(Base):
    """
    A connected mailbox and its push subscription state.

    history_cursor is the Gmail historyId everything up to which has been
    reconciled. It only ever moves forward (see reconcile_service).
    """

    __tablename__ = "mailbox_watches"
    __table_args__ = (Index("idx_mailbox_watches_enabled", "is_enabled"),)

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    email_address: Mapped[str] = mapped_column(String(320), unique=True, nullable=False)
    display_name: Mapped[str | None] = mapped_column(String(255), nullable=True)
    is_enabled: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)

    history_cursor: Mapped[int | None] = mapped_column(BigInteger, nullable=True)
    watch_channel_id: Mapped[str | None] = mapped_column(Text, nullable=True)
    watch_expires_at: Mapped[datetime | None] = mapped_column(nullable=True)
    watch_last_renewed_at: Mapped[datetime | None] = mapped_column(nullable=True)
    watch_last_error: Mapped[str | None] = mapped_column(Text, nullable=True)

    last_reconciled_at: Mapped[datetime | None] = mapped_column(nullable=True)
    last_sync_error: Mapped[str | None] = mapped_column(Text, nullable=True)

    created_at: Mapped[datetime] = mapped_column(default=_now_utc, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(default=_now_utc, nullable=False)

    credential: Mapped["MailboxCredential | None"] = relationship(
        back_populates="mailbox",
        cascade="all, delete-orphan",
        uselist=False,
    )


class MailboxCredential(Base):
    """Refreshable OAuth token pair bound to one mailbox (encrypted at rest)."""

    __tablename__ = "mailbox_credentials"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    mailbox_id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        ForeignKey("mailbox_watches.id", ondelete="CASCADE"),
        unique=True,
        nullable=False,
    )
    access_token_encrypted: Mapped[str | None] = mapped_column(Text, nullable=True)
    refresh_token_encrypted: Mapped[str | None] = mapped_column(Text, nullable=True)
    token_expires_at: Mapped[datetime | None] = mapped_column(nullable=True)
    granted_scopes: Mapped[list[str] | None] = mapped_column(JSON, nullable=True)
    invalidated_at: Mapped[datetime | None] = mapped_column(nullable=True)
    invalidation_reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(default=_now_utc, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(default=_now_utc, nullable=False)

    mailbox: Mapped["MailboxWatch"] = relationship(back_populates="credential")

    @property
    def is_usable(self) -> bool:
        return self.invalidated_at is None and bool(self.refresh_token_encrypted)


# =============================================================================
# Dispatch log
# =============================================================================


class DispatchLog(Base):
    """
    One row per automated reply handed to Gmail.

    The id is generated before the message is built so the tracking pixel
    can reference it. gmail_message_id is only set once Gmail accepted the
    send.
    """

    __tablename__ = "dispatch_logs"
    __table_args__ = (
        Index("idx_dispatch_logs_thread", "mailbox_id", "thread_id"),
        Index(
            "idx_dispatch_logs_follow_up",
            "follow_up_required",
            "follow_up_sent",
            "sent_at",
        ),
    )

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    # Kept (set NULL) when a mailbox disconnects: logs are never deleted here.
    mailbox_id: Mapped[uuid.UUID | None] = mapped_column(
        Uuid, ForeignKey("mailbox_watches.id", ondelete="SET NULL"), nullable=True
    )
    thread_id: Mapped[str] = mapped_column(String(255), nullable=False)
    gmail_message_id: Mapped[str | None] = mapped_column(
        String(255), unique=True, nullable=True
    )
    source_message_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    parent_log_id: Mapped[uuid.UUID | None] = mapped_column(Uuid, nullable=True)
    dedupe_key: Mapped[str | None] = mapped_column(String(255), unique=True, nullable=True)

    kind: Mapped[str] = mapped_column(
        String(20), default=DispatchKind.REPLY.value, nullable=False
    )
    action: Mapped[str] = mapped_column(
        String(30), default=DispatchAction.REPLY_SENT.value, nullable=False
    )
    status: Mapped[str] = mapped_column(
        String(20), default=DEFAULT_DISPATCH_STATUS.value, nullable=False
    )
    recipient_email: Mapped[str] = mapped_column(String(320), nullable=False)
    subject: Mapped[str | None] = mapped_column(Text, nullable=True)
    triage_label: Mapped[str | None] = mapped_column(String(50), nullable=True)

    follow_up_required: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    follow_up_sent: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)

    receipt_state: Mapped[str] = mapped_column(
        String(20), default=ReceiptState.MONITORING.value, nullable=False
    )
    receipt_checks: Mapped[int] = mapped_column(Integer, default=0, nullable=False)

    sent_at: Mapped[datetime | None] = mapped_column(nullable=True)
    opened_at: Mapped[datetime | None] = mapped_column(nullable=True)
    clicked_at: Mapped[datetime | None] = mapped_column(nullable=True)
    last_error: Mapped[str | None] = mapped_column(Text, nullable=True)

    created_at: Mapped[datetime] = mapped_column(default=_now_utc, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(default=_now_utc, nullable=False)


# =============================================================================
# Jobs
# =============================================================================


class Job(Base):
    """
    Background job for async processing.

    Used for: reconciliation, watch renewal, read-receipt polling and the
    follow-up sweep. Worker polls for pending jobs and processes them.
    """

    __tablename__ = "jobs"
    __table_args__ = (
        Index("idx_jobs_pending", "status", "run_at"),
        Index("idx_jobs_lock_key", "lock_key", "status"),
    )

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    job_type: Mapped[str] = mapped_column(String(50), nullable=False)
    payload: Mapped[dict] = mapped_column(JSON, nullable=False, default=dict)
    run_at: Mapped[datetime] = mapped_column(default=_now_utc, nullable=False)
    status: Mapped[str] = mapped_column(
        String(20), default=DEFAULT_JOB_STATUS.value, nullable=False
    )
    attempts: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    max_attempts: Mapped[int] = mapped_column(Integer, default=3, nullable=False)
    last_error: Mapped[str | None] = mapped_column(Text, nullable=True)

    # Jobs sharing a lock_key never run concurrently (per-mailbox single writer).
    lock_key: Mapped[str | None] = mapped_column(String(100), nullable=True)
    # Idempotency key for deduplication (unique)
    idempotency_key: Mapped[str | None] = mapped_column(String(255), unique=True, nullable=True)

    created_at: Mapped[datetime] = mapped_column(default=_now_utc, nullable=False)
    started_at: Mapped[datetime | None] = mapped_column(nullable=True)
    completed_at: Mapped[datetime | None] = mapped_column(nullable=True)
