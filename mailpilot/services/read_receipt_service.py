"""Read-receipt monitor.

Each dispatched message gets its own chain of ``read_receipt_poll`` jobs:
one check per job, rescheduled at a fixed interval until the message is seen
as opened or the check budget runs out (state ``unknown``). Lookup failures
just count as "not yet"; only a dead credential ends the chain early.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone
from typing import Any
from uuid import UUID

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from mailpilot.core.config import settings
from mailpilot.core.structured_logging import build_log_context
from mailpilot.db.enums import DispatchStatus, JobType, ReceiptState
from mailpilot.db.models import DispatchLog, MailboxWatch
from mailpilot.services import credential_service, job_service, tracking_service
from mailpilot.services.errors import MailpilotError, ReauthorizationRequired
from mailpilot.services.gmail_fetcher import GmailFetcher
from mailpilot.services.reply_service import header_value
from mailpilot.utils.datetime_parsing import as_utc
from mailpilot.utils.normalization import parse_email_address

logger = logging.getLogger(__name__)


def _now_utc() -> datetime:
    return datetime.now(timezone.utc)


def _is_unread(message: dict) -> bool:
    return "UNREAD" in (message.get("labelIds") or [])


def find_sent_message_in_thread(
    thread: dict,
    *,
    gmail_message_id: str | None,
    own_address: str,
    sent_at: datetime | None,
) -> dict | None:
    """
    Degraded lookup used only when the stored message id can't be fetched.

    Match by id first; otherwise take the newest message from our own address
    sent within the recency window of the dispatch.
    """
    messages = thread.get("messages") or []
    if gmail_message_id:
        for message in messages:
            if message.get("id") == gmail_message_id:
                return message

    own = own_address.strip().lower()
    window_ms = settings.READ_RECEIPT_RECENCY_WINDOW_SECONDS * 1000
    reference_ms = int((sent_at or _now_utc()).timestamp() * 1000)
    for message in reversed(messages):
        headers = (message.get("payload") or {}).get("headers") or []
        if parse_email_address(header_value(headers, "From")) != own:
            continue
        try:
            internal_ms = int(message.get("internalDate") or 0)
        except (TypeError, ValueError):
            continue
        if abs(internal_ms - reference_ms) <= window_ms:
            return message
    return None


def check_opened(fetcher: GmailFetcher, log: DispatchLog, mailbox: MailboxWatch) -> bool:
    """One read-flag check. Raises only ReauthorizationRequired."""
    context = build_log_context(mailbox_id=mailbox.id, dispatch_log_id=log.id)
    if log.gmail_message_id:
        try:
            return not _is_unread(fetcher.get_message(log.gmail_message_id, fmt="minimal"))
        except ReauthorizationRequired:
            raise
        except MailpilotError as exc:
            logger.info("Sent message lookup failed (%s); scanning thread", type(exc).__name__, extra=context)

    try:
        thread = fetcher.get_thread_metadata(log.thread_id)
    except ReauthorizationRequired:
        raise
    except MailpilotError as exc:
        logger.info("Thread lookup failed (%s)", type(exc).__name__, extra=context)
        return False
    match = find_sent_message_in_thread(
        thread,
        gmail_message_id=log.gmail_message_id,
        own_address=mailbox.email_address,
        sent_at=as_utc(log.sent_at),
    )
    return match is not None and not _is_unread(match)


def _finish(db: Session, log: DispatchLog, state: ReceiptState) -> None:
    log.receipt_state = state.value
    log.updated_at = _now_utc()
    db.commit()


def poll(db: Session, dispatch_log_id: UUID, **fetcher_kwargs: Any) -> str:
    """
    Run one monitor step for a dispatched message.

    Returns the monitor state after the step: ``monitoring`` (next check
    scheduled), ``opened``, ``unknown`` or ``stopped``.
    """
    log = db.get(DispatchLog, dispatch_log_id)
    if log is None:
        return "stopped"
    if log.receipt_state != ReceiptState.MONITORING.value:
        return log.receipt_state
    if log.status != DispatchStatus.SENT.value:
        # Opened/clicked through the tracking endpoints, or never sent.
        state = ReceiptState.OPENED if log.status in ("opened", "clicked") else ReceiptState.UNKNOWN
        _finish(db, log, state)
        return state.value

    mailbox = db.get(MailboxWatch, log.mailbox_id) if log.mailbox_id else None
    if mailbox is None:
        _finish(db, log, ReceiptState.UNKNOWN)
        return ReceiptState.UNKNOWN.value

    context = build_log_context(mailbox_id=mailbox.id, dispatch_log_id=log.id)
    opened = False
    try:
        with credential_service.authorized_fetcher(db, mailbox, **fetcher_kwargs) as fetcher:
            opened = check_opened(fetcher, log, mailbox)
    except ReauthorizationRequired:
        logger.warning("Credential gone; stopping read-receipt monitor", extra=context)
        _finish(db, log, ReceiptState.UNKNOWN)
        return ReceiptState.UNKNOWN.value
    except Exception:
        logger.warning("Read-receipt check failed", exc_info=True, extra=context)

    if opened:
        tracking_service.update_dispatch_status(db, log.id, DispatchStatus.OPENED)
        db.refresh(log)
        logger.info("Reply opened", extra=context)
        return ReceiptState.OPENED.value

    log.receipt_checks += 1
    log.updated_at = _now_utc()
    if log.receipt_checks >= settings.READ_RECEIPT_MAX_CHECKS:
        _finish(db, log, ReceiptState.UNKNOWN)
        logger.info("Read-receipt window elapsed", extra=context)
        return ReceiptState.UNKNOWN.value
    db.commit()

    try:
        job_service.schedule_job(
            db,
            job_type=JobType.READ_RECEIPT_POLL,
            payload={"dispatch_log_id": str(log.id)},
            run_at=_now_utc() + timedelta(seconds=settings.READ_RECEIPT_INTERVAL_SECONDS),
            idempotency_key=f"read_receipt:{log.id}:{log.receipt_checks}",
            max_attempts=1,
        )
    except IntegrityError:
        # Next check already queued.
        db.rollback()
    return ReceiptState.MONITORING.value
