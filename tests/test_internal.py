from __future__ import annotations

from sqlalchemy import select

from mailpilot.db.enums import JobType
from mailpilot.db.models import Job

INTERNAL_HEADERS = {"X-Internal-Secret": "test-internal-secret"}


async def test_scheduled_endpoints_require_secret(client):
    missing = await client.post("/internal/scheduled/mailbox-sync")
    wrong = await client.post(
        "/internal/scheduled/follow-ups", headers={"X-Internal-Secret": "wrong"}
    )

    assert missing.status_code == 422
    assert wrong.status_code == 403


async def test_mailbox_sync_reports_counts(client, db, mailbox):
    response = await client.post("/internal/scheduled/mailbox-sync", headers=INTERNAL_HEADERS)

    assert response.status_code == 200
    assert response.json() == {
        "mailboxes_checked": 1,
        "jobs_created": 1,
        "duplicates_skipped": 0,
        "watch_jobs_created": 0,
        "skipped_no_credential": 0,
    }


async def test_follow_up_sweep_is_queued_once_per_hour(client, db):
    first = await client.post("/internal/scheduled/follow-ups", headers=INTERNAL_HEADERS)
    second = await client.post("/internal/scheduled/follow-ups", headers=INTERNAL_HEADERS)

    assert first.json() == {"scheduled": True}
    assert second.json() == {"scheduled": False}
    jobs = db.scalars(select(Job).where(Job.job_type == JobType.FOLLOW_UP_SWEEP.value)).all()
    assert len(jobs) == 1


async def test_health(client, db):
    response = await client.get("/health")

    assert response.status_code == 200
    assert response.json()["status"] == "ok"
