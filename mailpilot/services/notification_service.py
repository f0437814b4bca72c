"""Notification receiver: Gmail Pub/Sub push envelopes -> reconcile jobs."""

from __future__ import annotations

import base64
import binascii
import json
import logging
from dataclasses import dataclass

from sqlalchemy.orm import Session

from mailpilot.core.structured_logging import build_log_context, mask_email
from mailpilot.db.enums import JobType
from mailpilot.services import credential_service, job_service, mailbox_service
from mailpilot.services.gmail_fetcher import parse_history_id
from mailpilot.utils.normalization import normalize_email

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PushNotification:
    email_address: str | None
    history_id: int | None
    pubsub_message_id: str | None


def decode_push_envelope(envelope: dict | None) -> PushNotification | None:
    """
    Decode ``{"message": {"data": <base64 JSON>, "messageId": ...}}``.

    Returns None when the envelope is malformed; Pub/Sub must still get a
    2xx for it or it will redeliver forever.
    """
    if not isinstance(envelope, dict):
        return None
    message = envelope.get("message")
    if not isinstance(message, dict):
        return None
    data = message.get("data")
    if not isinstance(data, str) or not data:
        return None
    try:
        padded = data + "=" * (-len(data) % 4)
        decoded = json.loads(base64.b64decode(padded.encode("ascii"), altchars=b"-_"))
    except (binascii.Error, UnicodeDecodeError, ValueError):
        return None
    if not isinstance(decoded, dict):
        return None
    pubsub_message_id = message.get("messageId") or message.get("message_id")
    return PushNotification(
        email_address=normalize_email(decoded.get("emailAddress")),
        history_id=parse_history_id(decoded.get("historyId")),
        pubsub_message_id=str(pubsub_message_id) if pubsub_message_id else None,
    )


def handle_gmail_push(db: Session, notification: PushNotification) -> dict[str, object]:
    """Resolve the mailbox and queue a reconcile for it.

    Unknown mailboxes and mailboxes without a usable credential are dropped.
    A redelivered Pub/Sub message (same messageId) queues nothing.
    """
    if not notification.email_address:
        return {"status": "ignored", "reason": "missing_email"}

    mailbox = mailbox_service.get_mailbox_by_email(db, notification.email_address)
    if mailbox is None or not mailbox.is_enabled:
        logger.info("Push for unknown mailbox %s dropped", mask_email(notification.email_address))
        return {"status": "ignored", "reason": "mailbox_not_found"}

    credential = credential_service.get_credential(db, mailbox.id)
    if credential is None or not credential.is_usable:
        logger.info(
            "Push for mailbox without credential dropped",
            extra=build_log_context(mailbox_id=mailbox.id),
        )
        return {"status": "ignored", "reason": "no_credential"}

    idempotency_key = (
        f"gmail_push:{notification.pubsub_message_id}"
        if notification.pubsub_message_id
        else None
    )
    job = job_service.enqueue_mailbox_job(
        db,
        mailbox_id=mailbox.id,
        job_type=JobType.MAILBOX_RECONCILE,
        payload={
            "reason": "gmail_push",
            "pubsub_message_id": notification.pubsub_message_id,
            "gmail_push_history_id": notification.history_id,
        },
        idempotency_key=idempotency_key,
    )
    return {
        "status": "accepted",
        "mailbox_id": str(mailbox.id),
        "job_id": str(job.id) if job else None,
        "duplicate": job is None,
    }
