"""Read-receipt and follow-up job handlers."""

from __future__ import annotations

import functools
import logging

import anyio

from mailpilot.jobs.handlers.mailboxes import _uuid_from_payload
from mailpilot.services import follow_up_service, read_receipt_service

logger = logging.getLogger(__name__)


async def process_read_receipt_poll(db, job) -> None:
    """One monitor step; the service queues the next step itself."""
    payload = job.payload or {}
    dispatch_log_id = _uuid_from_payload(payload, "dispatch_log_id")
    await anyio.to_thread.run_sync(
        functools.partial(read_receipt_service.poll, db, dispatch_log_id)
    )


async def process_follow_up_sweep(db, job) -> None:
    """Send follow-ups for replies left unanswered past the threshold."""
    result = await anyio.to_thread.run_sync(functools.partial(follow_up_service.sweep, db))
    logger.info(
        "Follow-up sweep: %s due, %s sent, %s failed",
        result.due,
        result.sent,
        result.failed,
    )
