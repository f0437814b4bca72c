"""Periodic scheduling: proactive reconciles, watch renewal, follow-up sweeps."""

from __future__ import annotations

from datetime import datetime, timezone

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from mailpilot.db.enums import JobType
from mailpilot.services import credential_service, job_service, mailbox_service, watch_service


def _now_utc() -> datetime:
    return datetime.now(timezone.utc)


def schedule_mailbox_sync(db: Session) -> dict[str, int]:
    """Queue a reconcile for every enabled mailbox, plus watch renewal when due."""
    now = _now_utc()
    mailboxes = mailbox_service.list_enabled_mailboxes(db)

    jobs_created = 0
    duplicates = 0
    watch_jobs_created = 0
    skipped_no_credential = 0
    for mailbox in mailboxes:
        credential = credential_service.get_credential(db, mailbox.id)
        if credential is None or not credential.is_usable:
            skipped_no_credential += 1
            continue

        job = job_service.enqueue_mailbox_job(
            db,
            mailbox_id=mailbox.id,
            job_type=JobType.MAILBOX_RECONCILE,
            payload={"reason": "scheduled_sync"},
        )
        if job:
            jobs_created += 1
        else:
            duplicates += 1

        if watch_service.watch_is_due(mailbox, now=now):
            watch_job = job_service.enqueue_mailbox_job(
                db,
                mailbox_id=mailbox.id,
                job_type=JobType.MAILBOX_WATCH_REFRESH,
                payload={"reason": "scheduled_watch_refresh"},
            )
            if watch_job:
                watch_jobs_created += 1

    return {
        "mailboxes_checked": len(mailboxes),
        "jobs_created": jobs_created,
        "duplicates_skipped": duplicates,
        "watch_jobs_created": watch_jobs_created,
        "skipped_no_credential": skipped_no_credential,
    }


def schedule_follow_up_sweep(db: Session, *, now: datetime | None = None) -> bool:
    """Queue one follow-up sweep per hour. Returns False if this hour's is queued."""
    scope = (now or _now_utc()).strftime("%Y%m%d%H")
    try:
        job_service.schedule_job(
            db,
            job_type=JobType.FOLLOW_UP_SWEEP,
            payload={"reason": "scheduled"},
            idempotency_key=f"follow_up_sweep:{scope}",
            lock_key="follow_up_sweep",
            max_attempts=1,
        )
    except IntegrityError:
        db.rollback()
        return False
    return True
