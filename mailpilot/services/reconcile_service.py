"""History reconciler.

One entry point, ``reconcile_mailbox``, serves both the push path and the
periodic sweep. It diffs Gmail history against the mailbox cursor, runs the
reply pipeline for new inbound threads, and always advances the cursor
afterwards, whether or not the pipeline succeeded.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any
from uuid import UUID

from sqlalchemy.orm import Session

from mailpilot.core.config import settings
from mailpilot.core.locks import mailbox_locks
from mailpilot.core.structured_logging import build_log_context
from mailpilot.db.enums import DispatchKind
from mailpilot.db.models import MailboxWatch
from mailpilot.services import (
    credential_service,
    dispatch_service,
    mailbox_service,
    reply_service,
    triage_service,
)
from mailpilot.services.completion_service import CompletionClient, get_completion_service
from mailpilot.services.errors import HistoryExpired, ReauthorizationRequired
from mailpilot.services.gmail_fetcher import GmailFetcher, parse_history_id

logger = logging.getLogger(__name__)

# Added messages carrying these labels are our own activity, not inbound mail.
_OWN_ACTIVITY_LABELS = {"SENT", "DRAFT"}


def _now_utc() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class InboundEvent:
    message_id: str
    thread_id: str


@dataclass
class ReconcileResult:
    new_inbound_events: list[InboundEvent] = field(default_factory=list)
    new_cursor: int | None = None
    outcomes: dict[str, str] = field(default_factory=dict)  # thread_id -> outcome
    rebaselined: bool = False


def inbound_events(added_messages: list[dict]) -> list[InboundEvent]:
    events: list[InboundEvent] = []
    for message in added_messages:
        labels = set(message.get("labelIds") or [])
        if labels & _OWN_ACTIVITY_LABELS:
            continue
        if not message.get("id") or not message.get("threadId"):
            continue
        events.append(InboundEvent(message_id=str(message["id"]), thread_id=str(message["threadId"])))
    return events


def select_threads(events: list[InboundEvent], *, first_only: bool) -> list[str]:
    """Threads to run the pipeline for, in history order, each at most once."""
    if first_only:
        return [events[0].thread_id] if events else []
    threads: list[str] = []
    for event in events:
        if event.thread_id not in threads:
            threads.append(event.thread_id)
    return threads


def process_thread(
    db: Session,
    mailbox: MailboxWatch,
    fetcher: GmailFetcher,
    thread_id: str,
    completion: CompletionClient | None = None,
) -> str:
    """
    Triage the newest message of a thread and reply if it is actionable.

    Returns the outcome: ``own_message``, ``already_replied``,
    ``advertisement`` or ``replied``.
    """
    snapshot = reply_service.snapshot_from_gmail_thread(fetcher.get_thread(thread_id))
    last = snapshot.last
    if last.is_from(mailbox.email_address):
        return "own_message"

    dedupe_key = dispatch_service.reply_dedupe_key(mailbox.id, last.gmail_id)
    dispatch_id, delivered = dispatch_service.allocate_dispatch_id(db, dedupe_key)
    if delivered is not None:
        return "already_replied"

    completion = completion or get_completion_service()
    label = triage_service.classify(last.body, completion)
    if not label.is_actionable:
        logger.info(
            "Advertisement; no reply",
            extra=build_log_context(mailbox_id=mailbox.id, thread_id=thread_id),
        )
        return "advertisement"

    reply_text = completion.generate_reply(reply_service.conversation_text(snapshot))
    outbound = reply_service.build_reply(
        snapshot,
        reply_text,
        from_address=mailbox.email_address,
        dispatch_log_id=dispatch_id,
        base_url=settings.API_BASE_URL,
    )
    dispatch_service.send(
        db,
        mailbox,
        fetcher,
        outbound,
        dispatch_log_id=dispatch_id,
        dedupe_key=dedupe_key,
        kind=DispatchKind.REPLY,
        source_message_id=last.gmail_id,
        triage_label=label.value,
    )
    return "replied"


def _baseline(fetcher: GmailFetcher) -> int | None:
    return parse_history_id(fetcher.get_profile().get("historyId"))


def reconcile_mailbox(
    db: Session,
    mailbox_id: UUID,
    *,
    reason: str,
    completion: CompletionClient | None = None,
    **fetcher_kwargs: Any,
) -> ReconcileResult:
    """
    Diff Gmail history since the stored cursor and act on new inbound mail.

    Serialized per mailbox. Pipeline errors are logged per thread and never
    block cursor advancement; ReauthorizationRequired still propagates.
    """
    result = ReconcileResult()
    with mailbox_locks.hold(str(mailbox_id)):
        mailbox = mailbox_service.get_mailbox(db, mailbox_id)
        if mailbox is None or not mailbox.is_enabled:
            return result

        log_context = build_log_context(mailbox_id=mailbox.id)
        start_cursor = mailbox.history_cursor
        errors: list[str] = []
        try:
            with credential_service.authorized_fetcher(db, mailbox, **fetcher_kwargs) as fetcher:
                if start_cursor is None:
                    result.new_cursor = _baseline(fetcher)
                    result.rebaselined = True
                    return result
                try:
                    diff = fetcher.list_history(start_cursor)
                except HistoryExpired:
                    logger.warning("Gmail history expired; re-baselining", extra=log_context)
                    result.new_cursor = _baseline(fetcher)
                    result.rebaselined = True
                    errors.append("history expired; cursor re-baselined")
                    return result

                result.new_cursor = diff.history_id
                result.new_inbound_events = inbound_events(diff.added_messages())
                thread_ids = select_threads(
                    result.new_inbound_events,
                    first_only=settings.RECONCILE_FIRST_MESSAGE_ONLY,
                )
                for thread_id in thread_ids:
                    dispatch_service.cancel_follow_ups(db, mailbox.id, thread_id)
                    try:
                        outcome = process_thread(db, mailbox, fetcher, thread_id, completion)
                    except ReauthorizationRequired:
                        raise
                    except Exception as exc:
                        db.rollback()
                        outcome = "error"
                        errors.append(f"{thread_id}: {type(exc).__name__}: {exc}"[:300])
                        logger.exception(
                            "Reply pipeline failed",
                            extra=build_log_context(mailbox_id=mailbox.id, thread_id=thread_id),
                        )
                    result.outcomes[thread_id] = outcome
        finally:
            if result.new_cursor is not None:
                mailbox_service.advance_cursor(db, mailbox.id, result.new_cursor)
            mailbox.last_reconciled_at = _now_utc()
            mailbox.last_sync_error = "; ".join(errors)[:500] or None
            mailbox.updated_at = _now_utc()
            db.commit()

        logger.info(
            "Mailbox reconciled (%s): %s inbound, %s threads",
            reason,
            len(result.new_inbound_events),
            len(result.outcomes),
            extra=log_context,
        )
    return result
