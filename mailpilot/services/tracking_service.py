"""
Dispatch tracking service.

Forward-only status updates for dispatched replies (sent -> opened ->
clicked), shared by the tracking pixel, click redirects and the
read-receipt monitor.
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from urllib.parse import urlparse
from uuid import UUID

from sqlalchemy import func, select, update
from sqlalchemy.orm import Session

from mailpilot.core.config import settings
from mailpilot.core.structured_logging import build_log_context
from mailpilot.db.enums import STATUS_RANK, DispatchAction, DispatchStatus, ReceiptState
from mailpilot.db.models import DispatchLog
from mailpilot.services.dispatch_service import DELIVERED_STATUSES

logger = logging.getLogger(__name__)

_STATUS_ACTIONS = {
    DispatchStatus.OPENED.value: DispatchAction.REPLY_OPENED.value,
    DispatchStatus.CLICKED.value: DispatchAction.REPLY_CLICKED.value,
}


def update_dispatch_status(
    db: Session,
    dispatch_log_id: UUID,
    new_status: DispatchStatus,
) -> bool:
    """
    Move a DispatchLog to ``new_status`` if that ranks higher than its current one.

    Lower or equal ranks are no-ops, as are logs outside the hierarchy
    (pending or failed sends). The check and write are one UPDATE so racing
    writers cannot regress the status. Returns True if the row changed.
    """
    new_rank = STATUS_RANK.get(new_status.value)
    if new_rank is None:
        raise ValueError(f"{new_status.value} is not a trackable status")
    lower = [status for status, rank in STATUS_RANK.items() if rank < new_rank]
    if not lower:
        return False

    now = datetime.now(timezone.utc)
    values: dict[str, object] = {
        "status": new_status.value,
        "action": _STATUS_ACTIONS[new_status.value],
        "receipt_state": ReceiptState.OPENED.value,
        "updated_at": now,
    }
    if new_status == DispatchStatus.OPENED:
        values["opened_at"] = now
    else:
        values["clicked_at"] = now

    result = db.execute(
        update(DispatchLog)
        .where(DispatchLog.id == dispatch_log_id, DispatchLog.status.in_(lower))
        .values(**values)
        .execution_options(synchronize_session=False)
    )
    db.commit()
    changed = bool(result.rowcount)
    if changed:
        logger.info(
            "Dispatch status advanced to %s",
            new_status.value,
            extra=build_log_context(dispatch_log_id=dispatch_log_id),
        )
    return changed


def record_open(db: Session, dispatch_log_id: UUID) -> bool:
    """Record a tracking-pixel fetch."""
    return update_dispatch_status(db, dispatch_log_id, DispatchStatus.OPENED)


def record_click(db: Session, dispatch_log_id: UUID) -> bool:
    return update_dispatch_status(db, dispatch_log_id, DispatchStatus.CLICKED)


@dataclass(frozen=True)
class TrackingStats:
    total_sent: int
    total_opened: int
    total_clicked: int
    opened_today: int
    opened_last_7_days: int
    open_rate: float  # percent of delivered replies opened or clicked


def tracking_stats(db: Session, mailbox_id: UUID, *, now: datetime | None = None) -> TrackingStats:
    """
    Engagement counts for one mailbox's delivered replies and follow-ups.

    A click counts as an open; "today" starts at midnight UTC.
    """
    now = now or datetime.now(timezone.utc)
    start_of_day = now.replace(hour=0, minute=0, second=0, microsecond=0)
    engaged_statuses = (DispatchStatus.OPENED.value, DispatchStatus.CLICKED.value)
    first_engaged_at = func.coalesce(DispatchLog.opened_at, DispatchLog.clicked_at)

    def count(*criteria) -> int:
        return db.scalar(
            select(func.count(DispatchLog.id)).where(DispatchLog.mailbox_id == mailbox_id, *criteria)
        ) or 0

    total_sent = count(DispatchLog.status.in_(DELIVERED_STATUSES))
    total_opened = count(DispatchLog.status.in_(engaged_statuses))
    open_rate = round(total_opened / total_sent * 100, 1) if total_sent else 0.0
    return TrackingStats(
        total_sent=total_sent,
        total_opened=total_opened,
        total_clicked=count(DispatchLog.status == DispatchStatus.CLICKED.value),
        opened_today=count(
            DispatchLog.status.in_(engaged_statuses), first_engaged_at >= start_of_day
        ),
        opened_last_7_days=count(
            DispatchLog.status.in_(engaged_statuses), first_engaged_at >= now - timedelta(days=7)
        ),
        open_rate=open_rate,
    )


def safe_redirect_url(url: str | None) -> str:
    """Only http(s) targets are followed; anything else goes to the fallback."""
    if url:
        parsed = urlparse(url)
        if parsed.scheme in ("http", "https") and parsed.netloc:
            return url
    return settings.CLICK_FALLBACK_URL
