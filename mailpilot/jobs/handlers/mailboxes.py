"""Mailbox reconcile and watch refresh job handlers."""

from __future__ import annotations

import functools
import logging
from uuid import UUID

import anyio

from mailpilot.core.structured_logging import build_log_context
from mailpilot.services import mailbox_service, reconcile_service, watch_service
from mailpilot.services.errors import ReauthorizationRequired

logger = logging.getLogger(__name__)


def _uuid_from_payload(payload: dict, key: str) -> UUID:
    value = payload.get(key)
    if not value:
        raise ValueError(f"Missing {key} in job payload")
    return UUID(str(value))


async def process_mailbox_reconcile(db, job) -> None:
    """Diff Gmail history for a mailbox and run the reply pipeline."""
    payload = job.payload or {}
    mailbox_id = _uuid_from_payload(payload, "mailbox_id")
    try:
        await anyio.to_thread.run_sync(
            functools.partial(
                reconcile_service.reconcile_mailbox,
                db,
                mailbox_id,
                reason=str(payload.get("reason") or "job"),
            )
        )
    except ReauthorizationRequired:
        # Credential is already invalidated; retrying cannot help.
        logger.warning(
            "Mailbox needs reauthorization; reconcile skipped",
            extra=build_log_context(mailbox_id=mailbox_id, job_id=job.id),
        )


async def process_mailbox_watch_refresh(db, job) -> None:
    """Ensure/renew the Gmail watch for a mailbox."""
    payload = job.payload or {}
    mailbox_id = _uuid_from_payload(payload, "mailbox_id")
    mailbox = mailbox_service.get_mailbox(db, mailbox_id)
    if mailbox is None or not mailbox.is_enabled:
        return
    await anyio.to_thread.run_sync(
        functools.partial(watch_service.refresh_watch_if_due, db, mailbox)
    )
