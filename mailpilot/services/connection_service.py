"""Connect and disconnect mailboxes."""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any

from sqlalchemy import update
from sqlalchemy.orm import Session

from mailpilot.core.config import settings
from mailpilot.core.structured_logging import build_log_context
from mailpilot.db.enums import JobType
from mailpilot.db.models import DispatchLog, MailboxWatch
from mailpilot.services import credential_service, job_service, mailbox_service, watch_service
from mailpilot.services.errors import MailpilotError
from mailpilot.utils.normalization import normalize_email

logger = logging.getLogger(__name__)


def _now_utc() -> datetime:
    return datetime.now(timezone.utc)


def connect_mailbox(
    db: Session,
    *,
    email_address: str,
    access_token: str,
    refresh_token: str,
    expires_in: int | None = None,
    scopes: list[str] | None = None,
    display_name: str | None = None,
    **fetcher_kwargs: Any,
) -> MailboxWatch:
    """
    Create (or re-enable) a mailbox, store its credential and start the watch.

    A watch failure is recorded on the mailbox but does not undo the connect;
    the scheduled sync retries renewal.
    """
    normalized = normalize_email(email_address)
    if not normalized:
        raise ValueError("email_address is required")

    mailbox = mailbox_service.get_mailbox_by_email(db, normalized)
    if mailbox is None:
        mailbox = MailboxWatch(email_address=normalized)
        db.add(mailbox)
    mailbox.display_name = display_name or mailbox.display_name
    mailbox.is_enabled = True
    mailbox.updated_at = _now_utc()
    db.commit()
    db.refresh(mailbox)

    credential_service.save_credential(
        db,
        mailbox,
        access_token=access_token,
        refresh_token=refresh_token,
        expires_in=expires_in,
        scopes=scopes,
    )

    if settings.GMAIL_PUSH_TOPIC.strip():
        try:
            watch_service.start_watch(db, mailbox, **fetcher_kwargs)
        except MailpilotError:
            logger.warning(
                "Watch not started on connect",
                extra=build_log_context(mailbox_id=mailbox.id),
            )
    job_service.enqueue_mailbox_job(
        db,
        mailbox_id=mailbox.id,
        job_type=JobType.MAILBOX_RECONCILE,
        payload={"reason": "connect"},
    )
    db.refresh(mailbox)
    return mailbox


def disconnect_mailbox(db: Session, mailbox: MailboxWatch, **fetcher_kwargs: Any) -> None:
    """Stop the watch and delete the mailbox and its credential.

    Dispatch logs are kept; they just lose their mailbox reference.
    """
    credential = credential_service.get_credential(db, mailbox.id)
    if credential is not None and credential.is_usable:
        watch_service.stop_watch(db, mailbox, **fetcher_kwargs)

    db.execute(
        update(DispatchLog)
        .where(DispatchLog.mailbox_id == mailbox.id)
        .values(mailbox_id=None, follow_up_required=False)
        .execution_options(synchronize_session=False)
    )
    mailbox_id = mailbox.id
    db.delete(mailbox)
    db.commit()
    logger.info("Mailbox disconnected", extra=build_log_context(mailbox_id=mailbox_id))
