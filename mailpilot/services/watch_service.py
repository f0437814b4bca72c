"""Watch registrar: Gmail users.watch / users.stop for connected mailboxes."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any

from sqlalchemy.orm import Session

from mailpilot.core.config import settings
from mailpilot.core.structured_logging import build_log_context
from mailpilot.db.models import MailboxWatch
from mailpilot.services import credential_service
from mailpilot.services.errors import MailpilotError
from mailpilot.services.gmail_fetcher import parse_history_id
from mailpilot.services.mailbox_service import advance_cursor
from mailpilot.utils.datetime_parsing import as_utc, parse_gmail_millis

logger = logging.getLogger(__name__)


def _now_utc() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class WatchResult:
    cursor: int | None
    channel_id: str
    expires_at: datetime | None


class WatchNotConfigured(MailpilotError):
    """GMAIL_PUSH_TOPIC is not set."""


def watch_is_due(mailbox: MailboxWatch, *, now: datetime | None = None) -> bool:
    """True when the subscription is missing, points at another topic, or expires soon."""
    topic = settings.GMAIL_PUSH_TOPIC.strip()
    if not topic or not mailbox.is_enabled:
        return False
    if mailbox.watch_channel_id and mailbox.watch_channel_id != topic:
        return True
    expires_at = as_utc(mailbox.watch_expires_at)
    if expires_at is None:
        return True
    renew_before = timedelta(hours=settings.GMAIL_WATCH_RENEW_BEFORE_HOURS)
    return expires_at <= (now or _now_utc()) + renew_before


def start_watch(db: Session, mailbox: MailboxWatch, **fetcher_kwargs: Any) -> WatchResult:
    """
    Request (or replace) the inbox push subscription and persist its state.

    Calling it again simply replaces the subscription. Failures are recorded
    on the mailbox and re-raised; nothing is retried here.
    """
    topic = settings.GMAIL_PUSH_TOPIC.strip()
    if not topic:
        mailbox.watch_last_error = "GMAIL_PUSH_TOPIC not configured"
        mailbox.updated_at = _now_utc()
        db.commit()
        raise WatchNotConfigured("GMAIL_PUSH_TOPIC not configured")

    now = _now_utc()
    try:
        with credential_service.authorized_fetcher(db, mailbox, **fetcher_kwargs) as fetcher:
            payload = fetcher.watch(
                topic_name=topic,
                label_ids=settings.gmail_push_label_ids_list,
            )
    except Exception as exc:
        mailbox.watch_last_error = str(exc)[:500]
        mailbox.updated_at = _now_utc()
        db.commit()
        logger.warning(
            "Gmail watch failed: %s",
            type(exc).__name__,
            extra=build_log_context(mailbox_id=mailbox.id),
        )
        raise

    # Only baseline here; an existing cursor still has changes to reconcile.
    cursor = parse_history_id(payload.get("historyId"))
    if cursor is not None and mailbox.history_cursor is None:
        advance_cursor(db, mailbox.id, cursor)
    mailbox.watch_channel_id = topic
    mailbox.watch_expires_at = parse_gmail_millis(payload.get("expiration"))
    mailbox.watch_last_renewed_at = now
    mailbox.watch_last_error = None
    mailbox.updated_at = now
    db.commit()
    db.refresh(mailbox)

    logger.info(
        "Gmail watch registered",
        extra=build_log_context(mailbox_id=mailbox.id),
    )
    return WatchResult(
        cursor=mailbox.history_cursor,
        channel_id=topic,
        expires_at=mailbox.watch_expires_at,
    )


def refresh_watch_if_due(db: Session, mailbox: MailboxWatch, **fetcher_kwargs: Any) -> WatchResult | None:
    if not watch_is_due(mailbox):
        return None
    return start_watch(db, mailbox, **fetcher_kwargs)


def stop_watch(db: Session, mailbox: MailboxWatch, **fetcher_kwargs: Any) -> None:
    """Best-effort users.stop; the local subscription state is cleared either way."""
    try:
        with credential_service.authorized_fetcher(db, mailbox, **fetcher_kwargs) as fetcher:
            fetcher.stop()
    except MailpilotError as exc:
        logger.warning(
            "Gmail watch stop failed: %s",
            type(exc).__name__,
            extra=build_log_context(mailbox_id=mailbox.id),
        )
    mailbox.watch_channel_id = None
    mailbox.watch_expires_at = None
    mailbox.updated_at = _now_utc()
    db.commit()
