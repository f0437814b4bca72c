"""
Internal endpoints for scheduled/cron operations.

Protected by X-Internal-Secret header.
Call from external cron (Cloud Scheduler, GH Actions, ...).
"""

from fastapi import APIRouter, Depends
from pydantic import BaseModel

from mailpilot.core.security import require_internal_secret
from mailpilot.db.session import SessionLocal
from mailpilot.services import sync_service


router = APIRouter(
    prefix="/internal/scheduled",
    tags=["internal"],
    dependencies=[Depends(require_internal_secret)],
)


class MailboxSyncResponse(BaseModel):
    mailboxes_checked: int
    jobs_created: int
    duplicates_skipped: int
    watch_jobs_created: int
    skipped_no_credential: int


class FollowUpSweepResponse(BaseModel):
    scheduled: bool


@router.post("/mailbox-sync", response_model=MailboxSyncResponse)
def schedule_mailbox_sync():
    """
    Proactive reconciliation for every enabled mailbox.

    Catches changes whose push notification was lost, and renews watches
    that are close to expiry.
    """
    with SessionLocal() as db:
        return MailboxSyncResponse(**sync_service.schedule_mailbox_sync(db))


@router.post("/follow-ups", response_model=FollowUpSweepResponse)
def schedule_follow_ups():
    """Queue the hourly follow-up sweep (one per hour, repeats are no-ops)."""
    with SessionLocal() as db:
        return FollowUpSweepResponse(scheduled=sync_service.schedule_follow_up_sweep(db))
