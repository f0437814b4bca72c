from __future__ import annotations

import uuid
from datetime import datetime, timedelta, timezone

import pytest

from mailpilot.db.enums import JobStatus, JobType
from mailpilot.db.models import Job
from mailpilot.jobs.registry import JOB_HANDLERS, resolve_job_handler
from mailpilot.services import job_service


def test_every_job_type_has_a_handler():
    assert set(JOB_HANDLERS) == {job_type.value for job_type in JobType}


def test_unknown_job_type_rejected():
    with pytest.raises(ValueError):
        resolve_job_handler("does_not_exist")


def test_pending_mailbox_job_is_coalesced(db):
    mailbox_id = uuid.uuid4()

    first = job_service.enqueue_mailbox_job(
        db, mailbox_id=mailbox_id, job_type=JobType.MAILBOX_RECONCILE, payload={"reason": "a"}
    )
    second = job_service.enqueue_mailbox_job(
        db, mailbox_id=mailbox_id, job_type=JobType.MAILBOX_RECONCILE, payload={"reason": "b"}
    )
    other = job_service.enqueue_mailbox_job(
        db, mailbox_id=uuid.uuid4(), job_type=JobType.MAILBOX_RECONCILE, payload={"reason": "c"}
    )

    assert first is not None
    assert second is None
    assert other is not None
    assert first.payload == {"mailbox_id": str(mailbox_id), "reason": "a"}
    assert first.lock_key == f"mailbox:{mailbox_id}"


def test_idempotency_key_is_used_once(db):
    mailbox_id = uuid.uuid4()
    kwargs = dict(
        mailbox_id=mailbox_id,
        job_type=JobType.MAILBOX_RECONCILE,
        payload={},
        idempotency_key="gmail_push:1",
    )
    job = job_service.enqueue_mailbox_job(db, **kwargs)
    job_service.mark_job_completed(db, job)

    assert job_service.enqueue_mailbox_job(db, **kwargs) is None


def test_claim_hands_out_one_job_per_lock_key(db):
    lock_a = job_service.mailbox_lock_key(uuid.uuid4())
    lock_b = job_service.mailbox_lock_key(uuid.uuid4())
    for lock_key, job_type in (
        (lock_a, JobType.MAILBOX_RECONCILE),
        (lock_a, JobType.MAILBOX_WATCH_REFRESH),
        (lock_b, JobType.MAILBOX_RECONCILE),
    ):
        job_service.schedule_job(db, job_type=job_type, payload={}, lock_key=lock_key)

    claimed = job_service.claim_pending_jobs(db, limit=10)

    assert sorted(job.lock_key for job in claimed) == sorted([lock_a, lock_b])
    assert all(job.status == JobStatus.RUNNING.value for job in claimed)
    assert all(job.attempts == 1 for job in claimed)

    # lock_a is still held by a running job.
    assert job_service.claim_pending_jobs(db, limit=10) == []


def test_future_jobs_are_not_claimed(db):
    job_service.schedule_job(
        db,
        job_type=JobType.READ_RECEIPT_POLL,
        payload={},
        run_at=datetime.now(timezone.utc) + timedelta(minutes=5),
    )

    assert job_service.claim_pending_jobs(db) == []


def test_failed_job_retries_until_max_attempts(db):
    job = job_service.schedule_job(db, job_type=JobType.FOLLOW_UP_SWEEP, payload={}, max_attempts=2)

    (claimed,) = job_service.claim_pending_jobs(db)
    job_service.mark_job_failed(db, claimed, "boom")
    assert claimed.status == JobStatus.PENDING.value

    (claimed,) = job_service.claim_pending_jobs(db)
    job_service.mark_job_failed(db, claimed, "boom again")
    assert claimed.status == JobStatus.FAILED.value
    assert claimed.last_error == "boom again"
    assert db.get(Job, job.id).attempts == 2
