"""Mailbox lookups, cursor persistence and the recent-threads view."""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any
from uuid import UUID

from sqlalchemy import or_, select, update
from sqlalchemy.orm import Session

from mailpilot.db.models import DispatchLog, MailboxWatch
from mailpilot.services import credential_service
from mailpilot.services.fetch_cache import TTLCache
from mailpilot.services.gmail_fetcher import fetch_with_stale_fallback
from mailpilot.services.reply_service import header_value
from mailpilot.utils.normalization import normalize_email

logger = logging.getLogger(__name__)

RECENT_THREADS_LIMIT = 25


def _now_utc() -> datetime:
    return datetime.now(timezone.utc)


def get_mailbox(db: Session, mailbox_id: UUID) -> MailboxWatch | None:
    return db.get(MailboxWatch, mailbox_id)


def get_mailbox_by_email(db: Session, email_address: str | None) -> MailboxWatch | None:
    normalized = normalize_email(email_address)
    if not normalized:
        return None
    return db.scalar(select(MailboxWatch).where(MailboxWatch.email_address == normalized))


def list_enabled_mailboxes(db: Session) -> list[MailboxWatch]:
    return list(
        db.scalars(
            select(MailboxWatch)
            .where(MailboxWatch.is_enabled.is_(True))
            .order_by(MailboxWatch.created_at)
        ).all()
    )


def advance_cursor(db: Session, mailbox_id: UUID, new_cursor: int) -> bool:
    """
    Move history_cursor forward to ``new_cursor``.

    A lower or equal value is a no-op, so concurrent or replayed
    reconciliations can never regress the cursor. Returns True if it moved.
    """
    result = db.execute(
        update(MailboxWatch)
        .where(
            MailboxWatch.id == mailbox_id,
            or_(
                MailboxWatch.history_cursor.is_(None),
                MailboxWatch.history_cursor < new_cursor,
            ),
        )
        .values(history_cursor=new_cursor, updated_at=_now_utc())
        .execution_options(synchronize_session=False)
    )
    db.commit()
    return bool(result.rowcount)


# =============================================================================
# Recent threads
# =============================================================================


def _summarize_thread(thread: dict) -> dict[str, Any]:
    messages = thread.get("messages") or []
    last = messages[-1] if messages else {}
    headers = (last.get("payload") or {}).get("headers") or []
    subject = header_value(headers, "Subject") or ""
    sender = header_value(headers, "From") or ""
    try:
        last_message_ms = int(last.get("internalDate") or 0)
    except (TypeError, ValueError):
        last_message_ms = 0
    return {
        "thread_id": thread.get("id"),
        "last_message_id": last.get("id"),
        "snippet": last.get("snippet") or "",
        "subject": subject[3:].lstrip() if subject.lower().startswith("re:") else subject,
        "sender": sender.split("<")[0].strip().strip('"'),
        "last_message_ms": last_message_ms,
        "message_count": len(messages),
    }


def _attach_dispatch_status(db: Session, summaries: list[dict]) -> list[dict]:
    message_ids = [s["last_message_id"] for s in summaries if s.get("last_message_id")]
    statuses: dict[str, str] = {}
    if message_ids:
        rows = db.execute(
            select(DispatchLog.gmail_message_id, DispatchLog.status).where(
                DispatchLog.gmail_message_id.in_(message_ids)
            )
        ).all()
        statuses = {row[0]: row[1] for row in rows}
    return [{**s, "dispatch_status": statuses.get(s.get("last_message_id"))} for s in summaries]


def list_recent_threads(
    db: Session,
    mailbox: MailboxWatch,
    cache: TTLCache,
    **fetcher_kwargs: Any,
) -> tuple[list[dict], bool]:
    """
    Last inbox threads for a mailbox, newest first, with dispatch status.

    Gmail results are cached per mailbox; when Gmail is throttled the last
    cached list is served instead (``is_stale=True``).
    """

    def _fetch() -> list[dict]:
        with credential_service.authorized_fetcher(db, mailbox, **fetcher_kwargs) as fetcher:
            threads = fetcher.list_threads(max_results=RECENT_THREADS_LIMIT)
            summaries = [
                _summarize_thread(fetcher.get_thread_metadata(item["id"]))
                for item in threads
                if item.get("id")
            ]
        summaries.sort(key=lambda s: s["last_message_ms"], reverse=True)
        return summaries

    summaries, is_stale = fetch_with_stale_fallback(cache, f"threads:{mailbox.id}", _fetch)
    return _attach_dispatch_status(db, summaries), is_stale
