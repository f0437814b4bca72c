"""Enum definitions for application constants."""

from enum import Enum


class DispatchStatus(str, Enum):
    """
    Delivery status of an automated reply.

    sent -> opened -> clicked only ever moves forward. pending and failed
    sit outside the hierarchy: pending is the pre-send placeholder, failed
    means the upstream send never succeeded.
    """
    PENDING = "pending"
    SENT = "sent"
    OPENED = "opened"
    CLICKED = "clicked"
    FAILED = "failed"


STATUS_RANK: dict[str, int] = {
    DispatchStatus.SENT.value: 0,
    DispatchStatus.OPENED.value: 2,
    DispatchStatus.CLICKED.value: 3,
}


class DispatchAction(str, Enum):
    """Last recorded action for a dispatched reply."""
    REPLY_SENT = "REPLY_SENT"
    REPLY_OPENED = "REPLY_OPENED"
    REPLY_CLICKED = "REPLY_CLICKED"
    FOLLOW_UP_SENT = "FOLLOW_UP_SENT"


class DispatchKind(str, Enum):
    REPLY = "reply"
    FOLLOW_UP = "follow_up"


class ReceiptState(str, Enum):
    """Read-receipt monitor state for one dispatched message."""
    MONITORING = "monitoring"
    OPENED = "opened"
    UNKNOWN = "unknown"


class TriageLabel(str, Enum):
    """Action category assigned to an inbound message."""
    DIRECT_INQUIRY = "Direct Inquiry"
    FORM_SUBMISSION = "Form Submission"
    ADVERTISEMENT = "Advertisement"

    @property
    def is_actionable(self) -> bool:
        return self is not TriageLabel.ADVERTISEMENT


class JobType(str, Enum):
    """Background job types handled by the worker."""
    MAILBOX_RECONCILE = "mailbox_reconcile"
    MAILBOX_WATCH_REFRESH = "mailbox_watch_refresh"
    READ_RECEIPT_POLL = "read_receipt_poll"
    FOLLOW_UP_SWEEP = "follow_up_sweep"


class JobStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


DEFAULT_JOB_STATUS = JobStatus.PENDING
DEFAULT_DISPATCH_STATUS = DispatchStatus.PENDING
