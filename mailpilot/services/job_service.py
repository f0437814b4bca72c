"""Job service - background job scheduling, claiming and bookkeeping."""

from __future__ import annotations

from datetime import datetime, timezone
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from mailpilot.db.enums import JobStatus, JobType
from mailpilot.db.models import Job


def _now_utc() -> datetime:
    return datetime.now(timezone.utc)


def mailbox_lock_key(mailbox_id: UUID | str) -> str:
    return f"mailbox:{mailbox_id}"


def schedule_job(
    db: Session,
    job_type: JobType,
    payload: dict,
    run_at: datetime | None = None,
    idempotency_key: str | None = None,
    lock_key: str | None = None,
    max_attempts: int = 3,
    commit: bool = True,
) -> Job:
    """
    Schedule a new background job.

    If run_at is None, the job runs immediately.
    If idempotency_key is provided, duplicate jobs with same key will fail
    with IntegrityError (caller should catch and handle).
    """
    job = Job(
        job_type=job_type.value,
        payload=payload,
        run_at=run_at or _now_utc(),
        status=JobStatus.PENDING.value,
        idempotency_key=idempotency_key,
        lock_key=lock_key,
        max_attempts=max_attempts,
    )
    db.add(job)
    if commit:
        db.commit()
        db.refresh(job)
    else:
        db.flush()
    return job


def get_job_by_idempotency_key(db: Session, idempotency_key: str) -> Job | None:
    return db.scalar(select(Job).where(Job.idempotency_key == idempotency_key))


def has_pending_job(db: Session, *, job_type: JobType, lock_key: str) -> bool:
    return (
        db.scalar(
            select(Job.id)
            .where(
                Job.job_type == job_type.value,
                Job.lock_key == lock_key,
                Job.status == JobStatus.PENDING.value,
            )
            .limit(1)
        )
        is not None
    )


def enqueue_mailbox_job(
    db: Session,
    *,
    mailbox_id: UUID,
    job_type: JobType,
    payload: dict,
    idempotency_key: str | None = None,
    coalesce: bool = True,
) -> Job | None:
    """
    Queue a job serialized on the mailbox lock key.

    Returns None when an identical job is already pending (coalesce) or the
    idempotency key was already used (redelivered notification).
    """
    lock_key = mailbox_lock_key(mailbox_id)
    if idempotency_key and get_job_by_idempotency_key(db, idempotency_key) is not None:
        return None
    if coalesce and has_pending_job(db, job_type=job_type, lock_key=lock_key):
        return None
    try:
        return schedule_job(
            db,
            job_type=job_type,
            payload={"mailbox_id": str(mailbox_id), **payload},
            idempotency_key=idempotency_key,
            lock_key=lock_key,
        )
    except IntegrityError:
        db.rollback()
        return None


def get_job(db: Session, job_id: UUID) -> Job | None:
    return db.get(Job, job_id)


def claim_pending_jobs(db: Session, limit: int = 10) -> list[Job]:
    """
    Claim due pending jobs and mark them running.

    At most one job per lock_key is handed out, and none whose lock_key is
    already held by a running job.
    """
    now = _now_utc()
    busy_keys = set(
        db.scalars(
            select(Job.lock_key).where(
                Job.status == JobStatus.RUNNING.value,
                Job.lock_key.is_not(None),
            )
        ).all()
    )
    candidates = db.scalars(
        select(Job)
        .where(Job.status == JobStatus.PENDING.value, Job.run_at <= now)
        .order_by(Job.run_at)
        .limit(max(limit * 5, limit))
        .with_for_update(skip_locked=True)
    ).all()

    claimed: list[Job] = []
    for job in candidates:
        if len(claimed) >= limit:
            break
        if job.lock_key:
            if job.lock_key in busy_keys:
                continue
            busy_keys.add(job.lock_key)
        job.status = JobStatus.RUNNING.value
        job.attempts += 1
        job.started_at = now
        claimed.append(job)
    db.commit()
    return claimed


def mark_job_completed(db: Session, job: Job) -> Job:
    """Mark a job as completed."""
    job.status = JobStatus.COMPLETED.value
    job.completed_at = _now_utc()
    job.last_error = None
    db.commit()
    db.refresh(job)
    return job


def mark_job_failed(db: Session, job: Job, error: str) -> Job:
    """
    Mark a job as failed.

    If attempts < max_attempts, reset to pending for retry.
    """
    job.last_error = error[:2000]
    if job.attempts < job.max_attempts:
        job.status = JobStatus.PENDING.value
    else:
        job.status = JobStatus.FAILED.value
        job.completed_at = _now_utc()
    db.commit()
    db.refresh(job)
    return job
