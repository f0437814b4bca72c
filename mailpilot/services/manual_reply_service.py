"""Operator-initiated replies through the same builder and dispatcher as the pipeline."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from uuid import UUID

from sqlalchemy.orm import Session

from mailpilot.core.config import settings
from mailpilot.core.locks import mailbox_locks
from mailpilot.core.structured_logging import build_log_context
from mailpilot.db.enums import DispatchKind
from mailpilot.db.models import DispatchLog, MailboxWatch
from mailpilot.services import credential_service, dispatch_service, reply_service
from mailpilot.services.completion_service import CompletionClient, get_completion_service
from mailpilot.services.errors import MailpilotError, ThreadIntegrityError

logger = logging.getLogger(__name__)


class AlreadyReplied(MailpilotError):
    """An operator reply to this message was already delivered."""

    def __init__(self, dispatch_log_id: UUID):
        super().__init__(f"Reply already sent as {dispatch_log_id}")
        self.dispatch_log_id = dispatch_log_id


@dataclass(frozen=True)
class ManualReplyResult:
    log: DispatchLog
    reply_text: str
    generated: bool


def operator_dedupe_key(mailbox_id: UUID, replied_to_message_id: str) -> str:
    return f"operator:{mailbox_id}:{replied_to_message_id}"


def reply_recipient(snapshot: reply_service.ThreadSnapshot, own_address: str) -> str:
    """Newest sender in the thread that is not the mailbox itself."""
    for message in reversed(snapshot.messages):
        if message.sender_email and not message.is_from(own_address):
            return message.sender_email
    raise ThreadIntegrityError(f"Thread {snapshot.thread_id} has no external sender")


def send_manual_reply(
    db: Session,
    mailbox: MailboxWatch,
    thread_id: str,
    reply_text: str | None = None,
    *,
    completion: CompletionClient | None = None,
) -> ManualReplyResult:
    """
    Reply to the newest message of ``thread_id`` on behalf of the operator.

    Without ``reply_text`` the completion service drafts one from the
    conversation. Delivery goes through the dispatcher, so the reply is
    logged, tracked and gets a read-receipt poll like an automatic one.
    """
    with mailbox_locks.hold(str(mailbox.id)):
        with credential_service.authorized_fetcher(db, mailbox) as fetcher:
            snapshot = reply_service.snapshot_from_gmail_thread(fetcher.get_thread(thread_id))
            last = snapshot.last
            recipient = reply_recipient(snapshot, mailbox.email_address)

            dedupe_key = operator_dedupe_key(mailbox.id, last.gmail_id)
            dispatch_id, delivered = dispatch_service.allocate_dispatch_id(db, dedupe_key)
            if delivered is not None:
                raise AlreadyReplied(delivered.id)

            generated = not (reply_text and reply_text.strip())
            if generated:
                completion = completion or get_completion_service()
                reply_text = completion.generate_reply(reply_service.conversation_text(snapshot))

            outbound = reply_service.build_reply(
                snapshot,
                reply_text,
                from_address=mailbox.email_address,
                dispatch_log_id=dispatch_id,
                base_url=settings.API_BASE_URL,
                recipient=recipient,
            )
            log = dispatch_service.send(
                db,
                mailbox,
                fetcher,
                outbound,
                dispatch_log_id=dispatch_id,
                dedupe_key=dedupe_key,
                kind=DispatchKind.REPLY,
                source_message_id=last.gmail_id,
            )

    logger.info(
        "Operator reply sent",
        extra=build_log_context(mailbox_id=mailbox.id, thread_id=thread_id, dispatch_log_id=log.id),
    )
    return ManualReplyResult(log=log, reply_text=reply_text, generated=generated)
