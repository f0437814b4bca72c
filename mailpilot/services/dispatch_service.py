"""Dispatcher: hands built replies to Gmail and records them in dispatch_logs."""

from __future__ import annotations

import logging
import uuid
from datetime import datetime, timedelta, timezone

from sqlalchemy import select, update
from sqlalchemy.orm import Session

from mailpilot.core.config import settings
from mailpilot.core.structured_logging import build_log_context
from mailpilot.db.enums import (
    DispatchAction,
    DispatchKind,
    DispatchStatus,
    JobType,
    ReceiptState,
)
from mailpilot.db.models import DispatchLog, MailboxWatch
from mailpilot.services import job_service
from mailpilot.services.errors import DispatchError, ReauthorizationRequired
from mailpilot.services.gmail_fetcher import GmailFetcher
from mailpilot.services.reply_service import OutboundMessage

logger = logging.getLogger(__name__)

# Statuses that mean Gmail accepted the message.
DELIVERED_STATUSES = (
    DispatchStatus.SENT.value,
    DispatchStatus.OPENED.value,
    DispatchStatus.CLICKED.value,
)


def _now_utc() -> datetime:
    return datetime.now(timezone.utc)


def reply_dedupe_key(mailbox_id: uuid.UUID, replied_to_message_id: str) -> str:
    return f"reply:{mailbox_id}:{replied_to_message_id}"


def follow_up_dedupe_key(parent_log_id: uuid.UUID) -> str:
    return f"followup:{parent_log_id}"


def get_by_dedupe_key(db: Session, dedupe_key: str) -> DispatchLog | None:
    return db.scalar(select(DispatchLog).where(DispatchLog.dedupe_key == dedupe_key))


def allocate_dispatch_id(db: Session, dedupe_key: str) -> tuple[uuid.UUID, DispatchLog | None]:
    """
    Id to build the outbound message with (the tracking pixel needs it).

    Reuses the id of an earlier pending/failed attempt for the same reply.
    The returned log is set only when that reply was already delivered.
    """
    existing = get_by_dedupe_key(db, dedupe_key)
    if existing is None:
        return uuid.uuid4(), None
    if existing.status in DELIVERED_STATUSES:
        return existing.id, existing
    return existing.id, None


def cancel_follow_ups(db: Session, mailbox_id: uuid.UUID, thread_id: str) -> int:
    """A new inbound message supersedes pending follow-ups in its thread."""
    result = db.execute(
        update(DispatchLog)
        .where(
            DispatchLog.mailbox_id == mailbox_id,
            DispatchLog.thread_id == thread_id,
            DispatchLog.follow_up_required.is_(True),
        )
        .values(follow_up_required=False, updated_at=_now_utc())
        .execution_options(synchronize_session=False)
    )
    db.commit()
    return result.rowcount or 0


def schedule_read_receipt(db: Session, log: DispatchLog) -> None:
    job_service.schedule_job(
        db,
        job_type=JobType.READ_RECEIPT_POLL,
        payload={"dispatch_log_id": str(log.id)},
        run_at=_now_utc() + timedelta(seconds=settings.READ_RECEIPT_GRACE_SECONDS),
        idempotency_key=f"read_receipt:{log.id}:0",
        max_attempts=1,
    )


def send(
    db: Session,
    mailbox: MailboxWatch,
    fetcher: GmailFetcher,
    outbound: OutboundMessage,
    *,
    dispatch_log_id: uuid.UUID,
    dedupe_key: str,
    kind: DispatchKind = DispatchKind.REPLY,
    parent_log_id: uuid.UUID | None = None,
    source_message_id: str | None = None,
    triage_label: str | None = None,
) -> DispatchLog:
    """
    Send ``outbound`` into its thread and return the DispatchLog.

    The log is written as ``pending`` first and only becomes ``sent`` with the
    Gmail message id once the send succeeded. A failed send leaves it
    ``failed`` and raises DispatchError.
    """
    log = db.get(DispatchLog, dispatch_log_id)
    if log is not None and log.status in DELIVERED_STATUSES:
        return log

    if log is None:
        log = DispatchLog(
            id=dispatch_log_id,
            mailbox_id=mailbox.id,
            thread_id=outbound.thread_id,
            dedupe_key=dedupe_key,
            kind=kind.value,
            action=(
                DispatchAction.FOLLOW_UP_SENT.value
                if kind == DispatchKind.FOLLOW_UP
                else DispatchAction.REPLY_SENT.value
            ),
            recipient_email=outbound.recipient,
            subject=outbound.subject,
            parent_log_id=parent_log_id,
            source_message_id=source_message_id,
            triage_label=triage_label,
            follow_up_required=kind == DispatchKind.REPLY,
        )
        db.add(log)
    log.status = DispatchStatus.PENDING.value
    log.last_error = None
    log.updated_at = _now_utc()
    db.commit()

    log_context = build_log_context(
        mailbox_id=mailbox.id,
        thread_id=outbound.thread_id,
        dispatch_log_id=log.id,
    )
    try:
        result = fetcher.send_raw(outbound.raw, thread_id=outbound.thread_id)
    except Exception as exc:
        log.status = DispatchStatus.FAILED.value
        log.last_error = str(exc)[:500]
        log.updated_at = _now_utc()
        db.commit()
        logger.warning("Reply send failed: %s", type(exc).__name__, extra=log_context)
        if isinstance(exc, ReauthorizationRequired):
            raise
        raise DispatchError(f"Gmail send failed: {exc}") from exc

    now = _now_utc()
    log.gmail_message_id = str(result["id"])
    log.status = DispatchStatus.SENT.value
    log.receipt_state = ReceiptState.MONITORING.value
    log.receipt_checks = 0
    log.sent_at = now
    log.updated_at = now
    db.commit()
    logger.info("Reply sent", extra=log_context)

    schedule_read_receipt(db, log)
    return log
