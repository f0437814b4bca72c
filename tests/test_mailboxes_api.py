from __future__ import annotations

import uuid

import httpx
import pytest
from sqlalchemy import select

from mailpilot.core.config import settings
from mailpilot.db.enums import DispatchStatus, JobType
from mailpilot.db.models import DispatchLog, Job, MailboxCredential, MailboxWatch

INTERNAL_HEADERS = {"X-Internal-Secret": "test-internal-secret"}

TOPIC = "projects/test-project/topics/gmail"


@pytest.mark.asyncio
async def test_mailbox_endpoints_require_internal_secret(client, mailbox):
    missing = await client.get(f"/mailboxes/{mailbox.id}")
    wrong = await client.get(f"/mailboxes/{mailbox.id}", headers={"X-Internal-Secret": "nope"})

    assert missing.status_code == 422
    assert wrong.status_code == 403


@pytest.mark.asyncio
async def test_unknown_mailbox_is_404(client, db):
    response = await client.get(f"/mailboxes/{uuid.uuid4()}", headers=INTERNAL_HEADERS)
    assert response.status_code == 404


@pytest.mark.asyncio
async def test_connect_stores_encrypted_credential_and_starts_watch(client, db, gmail, monkeypatch):
    monkeypatch.setattr(settings, "GMAIL_PUSH_TOPIC", TOPIC)

    response = await client.post(
        "/mailboxes",
        headers=INTERNAL_HEADERS,
        json={
            "email_address": "Sales@Example.com",
            "access_token": "ya29.token",
            "refresh_token": "1//refresh",
            "expires_in": 3600,
            "display_name": "Sales",
        },
    )

    assert response.status_code == 201
    body = response.json()
    assert body["email_address"] == "sales@example.com"
    assert body["credential_valid"] is True
    assert body["watch_channel_id"] == TOPIC
    assert body["history_cursor"] == gmail.history_id

    credential = db.scalar(select(MailboxCredential))
    assert credential.refresh_token_encrypted not in ("", "1//refresh")
    assert credential.access_token_encrypted != "ya29.token"

    watch_request = next(r for r in gmail.requests if r.url.path.endswith("/watch"))
    assert watch_request.headers["authorization"] == "Bearer ya29.token"

    jobs = db.scalars(select(Job).where(Job.job_type == JobType.MAILBOX_RECONCILE.value)).all()
    assert [job.payload["reason"] for job in jobs] == ["connect"]


@pytest.mark.asyncio
async def test_connect_without_topic_skips_watch(client, db, gmail):
    response = await client.post(
        "/mailboxes",
        headers=INTERNAL_HEADERS,
        json={"email_address": "a@example.com", "access_token": "t", "refresh_token": "r"},
    )

    assert response.status_code == 201
    assert response.json()["watch_channel_id"] is None
    assert gmail.requests == []


@pytest.mark.asyncio
async def test_start_watch_without_topic_is_501(client, mailbox):
    response = await client.post(f"/mailboxes/{mailbox.id}/watch", headers=INTERNAL_HEADERS)
    assert response.status_code == 501


@pytest.mark.asyncio
async def test_rewatch_keeps_existing_cursor(client, db, mailbox, gmail, monkeypatch):
    monkeypatch.setattr(settings, "GMAIL_PUSH_TOPIC", TOPIC)
    mailbox.history_cursor = 500
    db.commit()

    response = await client.post(f"/mailboxes/{mailbox.id}/watch", headers=INTERNAL_HEADERS)

    assert response.status_code == 200
    body = response.json()
    assert body["cursor"] == 500
    assert body["channel_id"] == TOPIC
    assert body["expires_at"] is not None


@pytest.mark.asyncio
async def test_watch_with_revoked_token_is_409(client, db, mailbox, gmail, monkeypatch):
    monkeypatch.setattr(settings, "GMAIL_PUSH_TOPIC", TOPIC)
    gmail.queued.append(httpx.Response(401))

    response = await client.post(f"/mailboxes/{mailbox.id}/watch", headers=INTERNAL_HEADERS)
    status = await client.get(f"/mailboxes/{mailbox.id}", headers=INTERNAL_HEADERS)

    assert response.status_code == 409
    assert status.json()["credential_valid"] is False
    assert status.json()["reauthorization_required"] is True
    assert status.json()["watch_last_error"]


@pytest.mark.asyncio
async def test_manual_reconcile(client, db, mailbox, gmail, completion):
    mailbox.history_cursor = gmail.history_id
    db.commit()
    gmail.add_message("t1", gmail_id="m1")

    response = await client.post(f"/mailboxes/{mailbox.id}/reconcile", headers=INTERNAL_HEADERS)

    assert response.status_code == 200
    body = response.json()
    assert body["new_inbound_events"] == 1
    assert body["outcomes"] == {"t1": "replied"}
    assert len(gmail.sent) == 1


@pytest.mark.asyncio
async def test_recent_threads_with_dispatch_status(client, db, mailbox, gmail):
    gmail.add_message("t1", gmail_id="m1", subject="Pricing")
    gmail.add_message("t2", gmail_id="m2", subject="Re: Demo", sender='"Bob B" <bob@customer.com>')
    gmail.add_message("t1", gmail_id="r1", sender=mailbox.email_address, subject="Re: Pricing", labels=("SENT",))
    db.add(
        DispatchLog(
            mailbox_id=mailbox.id,
            thread_id="t1",
            gmail_message_id="r1",
            recipient_email="alice@customer.com",
            status=DispatchStatus.OPENED.value,
        )
    )
    db.commit()

    response = await client.get(f"/mailboxes/{mailbox.id}/threads", headers=INTERNAL_HEADERS)

    assert response.status_code == 200
    body = response.json()
    assert body["stale"] is False
    items = {item["thread_id"]: item for item in body["items"]}
    assert [item["thread_id"] for item in body["items"]] == ["t1", "t2"]
    assert items["t1"]["subject"] == "Pricing"
    assert items["t1"]["message_count"] == 2
    assert items["t1"]["dispatch_status"] == "opened"
    assert items["t2"]["subject"] == "Demo"
    assert items["t2"]["sender"] == "Bob B"
    assert items["t2"]["dispatch_status"] is None


@pytest.mark.asyncio
async def test_recent_threads_served_stale_while_throttled(client, db, mailbox, gmail):
    from mailpilot.core.deps import get_thread_cache

    gmail.add_message("t1", gmail_id="m1")
    first = await client.get(f"/mailboxes/{mailbox.id}/threads", headers=INTERNAL_HEADERS)
    assert first.json()["stale"] is False

    cache = get_thread_cache()
    cache.ttl_seconds = 0
    gmail.queued.extend(httpx.Response(429, headers={"Retry-After": "1"}) for _ in range(10))

    second = await client.get(f"/mailboxes/{mailbox.id}/threads", headers=INTERNAL_HEADERS)

    assert second.status_code == 200
    assert second.json()["stale"] is True
    assert [item["thread_id"] for item in second.json()["items"]] == ["t1"]


@pytest.mark.asyncio
async def test_recent_threads_throttled_without_cache_is_503(client, db, mailbox, gmail):
    gmail.queued.extend(httpx.Response(429, headers={"Retry-After": "4"}) for _ in range(10))

    response = await client.get(f"/mailboxes/{mailbox.id}/threads", headers=INTERNAL_HEADERS)

    assert response.status_code == 503
    assert response.headers["retry-after"] == "4"


@pytest.mark.asyncio
async def test_thread_detail(client, db, mailbox, gmail):
    gmail.add_message("t1", gmail_id="m1", body="First question")
    gmail.add_message("t1", gmail_id="m2", body="Second question")

    response = await client.get(f"/mailboxes/{mailbox.id}/threads/t1", headers=INTERNAL_HEADERS)

    assert response.status_code == 200
    body = response.json()
    assert body["thread_id"] == "t1"
    assert [m["body"] for m in body["messages"]] == ["First question", "Second question"]


@pytest.mark.asyncio
async def test_disconnect_keeps_dispatch_history(client, db, mailbox, gmail):
    log = DispatchLog(
        mailbox_id=mailbox.id,
        thread_id="t1",
        recipient_email="alice@customer.com",
        status=DispatchStatus.SENT.value,
    )
    db.add(log)
    db.commit()
    log_id = log.id

    response = await client.delete(f"/mailboxes/{mailbox.id}", headers=INTERNAL_HEADERS)

    assert response.status_code == 204
    assert any(r.url.path.endswith("/stop") for r in gmail.requests)
    db.expire_all()
    assert db.scalar(select(MailboxWatch)) is None
    assert db.scalar(select(MailboxCredential)) is None
    kept = db.get(DispatchLog, log_id)
    assert kept.mailbox_id is None
    assert kept.follow_up_required is False
