"""Follow-up scheduler: one polite nudge for replies that got no answer."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any
from uuid import UUID

from sqlalchemy import select, update
from sqlalchemy.orm import Session

from mailpilot.core.config import settings
from mailpilot.core.structured_logging import build_log_context
from mailpilot.db.enums import DispatchKind
from mailpilot.db.models import DispatchLog, MailboxWatch
from mailpilot.services import credential_service, dispatch_service, reply_service
from mailpilot.services.completion_service import CompletionClient, get_completion_service
from mailpilot.services.dispatch_service import DELIVERED_STATUSES

logger = logging.getLogger(__name__)


def _now_utc() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class SweepResult:
    due: int = 0
    claimed: int = 0
    sent: int = 0
    failed: int = 0


def due_follow_up_ids(db: Session, *, now: datetime | None = None) -> list[UUID]:
    cutoff = (now or _now_utc()) - timedelta(hours=settings.FOLLOW_UP_AFTER_HOURS)
    return list(
        db.scalars(
            select(DispatchLog.id)
            .where(
                DispatchLog.kind == DispatchKind.REPLY.value,
                DispatchLog.follow_up_required.is_(True),
                DispatchLog.follow_up_sent.is_(False),
                DispatchLog.status.in_(DELIVERED_STATUSES),
                DispatchLog.sent_at.is_not(None),
                DispatchLog.sent_at < cutoff,
            )
            .order_by(DispatchLog.sent_at)
        ).all()
    )


def claim_follow_up(db: Session, dispatch_log_id: UUID) -> bool:
    """
    Mark a row as followed-up before anything is sent.

    The WHERE clause re-checks follow_up_required, so a row cleared by a newer
    inbound message is never claimed. Returns False if someone else got it.
    """
    result = db.execute(
        update(DispatchLog)
        .where(
            DispatchLog.id == dispatch_log_id,
            DispatchLog.follow_up_required.is_(True),
            DispatchLog.follow_up_sent.is_(False),
        )
        .values(follow_up_sent=True, updated_at=_now_utc())
        .execution_options(synchronize_session=False)
    )
    db.commit()
    return bool(result.rowcount)


def send_follow_up(
    db: Session,
    log: DispatchLog,
    completion: CompletionClient,
    **fetcher_kwargs: Any,
) -> DispatchLog | None:
    mailbox = db.get(MailboxWatch, log.mailbox_id) if log.mailbox_id else None
    if mailbox is None or not mailbox.is_enabled:
        return None
    dedupe_key = dispatch_service.follow_up_dedupe_key(log.id)
    dispatch_id, delivered = dispatch_service.allocate_dispatch_id(db, dedupe_key)
    if delivered is not None:
        return delivered

    with credential_service.authorized_fetcher(db, mailbox, **fetcher_kwargs) as fetcher:
        snapshot = reply_service.snapshot_from_gmail_thread(fetcher.get_thread(log.thread_id))
        text = completion.generate_reply(
            reply_service.conversation_text(snapshot), follow_up=True
        )
        outbound = reply_service.build_reply(
            snapshot,
            text,
            from_address=mailbox.email_address,
            dispatch_log_id=dispatch_id,
            base_url=settings.API_BASE_URL,
            recipient=log.recipient_email,
        )
        return dispatch_service.send(
            db,
            mailbox,
            fetcher,
            outbound,
            dispatch_log_id=dispatch_id,
            dedupe_key=dedupe_key,
            kind=DispatchKind.FOLLOW_UP,
            parent_log_id=log.id,
        )


def sweep(
    db: Session,
    *,
    completion: CompletionClient | None = None,
    now: datetime | None = None,
    **fetcher_kwargs: Any,
) -> SweepResult:
    """Send follow-ups for every due reply. Each row is attempted at most once."""
    result = SweepResult()
    ids = due_follow_up_ids(db, now=now)
    result.due = len(ids)
    for dispatch_log_id in ids:
        if not claim_follow_up(db, dispatch_log_id):
            continue
        result.claimed += 1
        log = db.get(DispatchLog, dispatch_log_id)
        context = build_log_context(mailbox_id=log.mailbox_id, dispatch_log_id=log.id, thread_id=log.thread_id)
        try:
            sent = send_follow_up(db, log, completion or get_completion_service(), **fetcher_kwargs)
        except Exception:
            db.rollback()
            result.failed += 1
            logger.exception("Follow-up failed", extra=context)
            continue
        if sent is not None:
            result.sent += 1
            logger.info("Follow-up sent", extra=context)
    return result
