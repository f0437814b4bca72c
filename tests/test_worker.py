from __future__ import annotations

import uuid

from mailpilot import worker
from mailpilot.db.enums import JobStatus, JobType
from mailpilot.db.models import Job, MailboxWatch
from mailpilot.services import job_service


async def test_run_once_processes_reconcile_job(db, mailbox, gmail, completion):
    job = job_service.enqueue_mailbox_job(
        db, mailbox_id=mailbox.id, job_type=JobType.MAILBOX_RECONCILE, payload={"reason": "test"}
    )

    processed = await worker.run_once()

    assert processed == 1
    db.expire_all()
    assert db.get(Job, job.id).status == JobStatus.COMPLETED.value
    # First reconcile only baselines the cursor.
    assert db.get(MailboxWatch, mailbox.id).history_cursor == gmail.history_id


async def test_failing_job_is_put_back_for_retry(db):
    job = job_service.schedule_job(db, job_type=JobType.READ_RECEIPT_POLL, payload={})

    await worker.run_once()

    db.expire_all()
    failed = db.get(Job, job.id)
    assert failed.status == JobStatus.PENDING.value
    assert failed.attempts == 1
    assert failed.last_error.startswith("ValueError")


async def test_job_fails_for_good_after_max_attempts(db):
    job = job_service.schedule_job(
        db, job_type=JobType.READ_RECEIPT_POLL, payload={}, max_attempts=1
    )

    await worker.run_once()

    db.expire_all()
    assert db.get(Job, job.id).status == JobStatus.FAILED.value


async def test_jobs_sharing_a_lock_key_run_one_per_batch(db):
    lock_key = job_service.mailbox_lock_key(uuid.uuid4())
    for _ in range(2):
        job_service.schedule_job(
            db, job_type=JobType.FOLLOW_UP_SWEEP, payload={}, lock_key=lock_key
        )

    assert await worker.run_once() == 1
    assert await worker.run_once() == 1
    assert await worker.run_once() == 0


async def test_run_once_without_jobs_is_a_no_op(db):
    assert await worker.run_once() == 0
