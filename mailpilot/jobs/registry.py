"""Job handler registry."""

from __future__ import annotations

from typing import Awaitable, Callable, Mapping

from mailpilot.db.enums import JobType
from mailpilot.jobs.handlers import dispatch, mailboxes

JobHandler = Callable[[object, object], Awaitable[None]]

JOB_HANDLERS: Mapping[str, JobHandler] = {
    JobType.MAILBOX_RECONCILE.value: mailboxes.process_mailbox_reconcile,
    JobType.MAILBOX_WATCH_REFRESH.value: mailboxes.process_mailbox_watch_refresh,
    JobType.READ_RECEIPT_POLL.value: dispatch.process_read_receipt_poll,
    JobType.FOLLOW_UP_SWEEP.value: dispatch.process_follow_up_sweep,
}


def resolve_job_handler(job_type: str) -> JobHandler:
    handler = JOB_HANDLERS.get(job_type)
    if not handler:
        raise ValueError(f"Unknown job type: {job_type}")
    return handler
