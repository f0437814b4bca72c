from __future__ import annotations

import uuid

import httpx
import pytest
from sqlalchemy import select

from mailpilot.db.enums import DispatchStatus, JobType
from mailpilot.db.models import DispatchLog, Job
from mailpilot.services import manual_reply_service, reply_service

INTERNAL_HEADERS = {"X-Internal-Secret": "test-internal-secret"}


def _plain_text(message) -> str:
    return message.get_payload()[0].get_payload(decode=True).decode("utf-8")


@pytest.mark.asyncio
async def test_operator_reply_is_threaded_and_tracked(client, db, mailbox, gmail):
    gmail.add_message("t1", gmail_id="m1")

    response = await client.post(
        f"/mailboxes/{mailbox.id}/threads/t1/reply",
        headers=INTERNAL_HEADERS,
        json={"reply_text": "We will call you tomorrow."},
    )

    assert response.status_code == 201
    body = response.json()
    assert body["status"] == "sent"
    assert body["gmail_message_id"] == "sent-1"
    assert body["recipient_email"] == "alice@customer.com"
    assert body["generated"] is False

    sent = gmail.sent_message()
    assert gmail.sent[0]["threadId"] == "t1"
    assert sent["To"] == "alice@customer.com"
    assert sent["In-Reply-To"] == "<m1@mail.example.com>"
    assert _plain_text(sent) == "We will call you tomorrow."

    log = db.get(DispatchLog, uuid.UUID(body["dispatch_log_id"]))
    assert log.source_message_id == "m1"
    assert log.dedupe_key == manual_reply_service.operator_dedupe_key(mailbox.id, "m1")
    jobs = db.scalars(select(Job).where(Job.job_type == JobType.READ_RECEIPT_POLL.value)).all()
    assert [job.payload["dispatch_log_id"] for job in jobs] == [str(log.id)]


@pytest.mark.asyncio
async def test_operator_reply_text_is_drafted_when_omitted(client, db, mailbox, gmail, completion):
    gmail.add_message("t1", gmail_id="m1", body="Do you ship to Canada?")

    response = await client.post(
        f"/mailboxes/{mailbox.id}/threads/t1/reply", headers=INTERNAL_HEADERS, json={}
    )

    assert response.status_code == 201
    assert response.json()["generated"] is True
    assert response.json()["reply_text"] == completion.reply
    assert "Do you ship to Canada?" in completion.conversations[0][0]
    assert _plain_text(gmail.sent_message()) == completion.reply


@pytest.mark.asyncio
async def test_operator_reply_after_own_message_goes_to_customer(client, db, mailbox, gmail):
    gmail.add_message("t1", gmail_id="m1")
    gmail.add_message("t1", gmail_id="r1", sender=mailbox.email_address, labels=("SENT",))

    response = await client.post(
        f"/mailboxes/{mailbox.id}/threads/t1/reply",
        headers=INTERNAL_HEADERS,
        json={"reply_text": "Following up on my last note."},
    )

    assert response.status_code == 201
    sent = gmail.sent_message()
    assert sent["To"] == "alice@customer.com"
    assert sent["In-Reply-To"] == "<r1@mail.example.com>"


@pytest.mark.asyncio
async def test_operator_reply_is_sent_once_per_message(client, db, mailbox, gmail):
    gmail.add_message("t1", gmail_id="m1")
    url = f"/mailboxes/{mailbox.id}/threads/t1/reply"

    first = await client.post(url, headers=INTERNAL_HEADERS, json={"reply_text": "Hello"})
    # Drop our sent copy so the thread ends with m1 again.
    gmail.threads["t1"].pop()
    second = await client.post(url, headers=INTERNAL_HEADERS, json={"reply_text": "Hello"})

    assert first.status_code == 201
    assert second.status_code == 409
    assert len(gmail.sent) == 1


@pytest.mark.asyncio
async def test_operator_reply_retry_after_send_failure(client, db, mailbox, gmail):
    gmail.add_message("t1", gmail_id="m1")
    gmail.send_failures.append(httpx.Response(500, json={"error": {"message": "boom"}}))
    url = f"/mailboxes/{mailbox.id}/threads/t1/reply"

    failed = await client.post(url, headers=INTERNAL_HEADERS, json={"reply_text": "Hello"})

    assert failed.status_code == 502
    log = db.scalar(select(DispatchLog))
    assert log.status == DispatchStatus.FAILED.value
    assert log.gmail_message_id is None

    retried = await client.post(url, headers=INTERNAL_HEADERS, json={"reply_text": "Hello"})

    assert retried.status_code == 201
    assert retried.json()["dispatch_log_id"] == str(log.id)
    assert len(db.scalars(select(DispatchLog)).all()) == 1


@pytest.mark.asyncio
async def test_operator_reply_to_unknown_thread_is_404(client, db, mailbox, gmail):
    response = await client.post(
        f"/mailboxes/{mailbox.id}/threads/missing/reply",
        headers=INTERNAL_HEADERS,
        json={"reply_text": "Hello"},
    )
    assert response.status_code == 404


@pytest.mark.asyncio
async def test_operator_reply_needs_an_external_sender(client, db, mailbox, gmail):
    gmail.add_message("t1", gmail_id="r1", sender=mailbox.email_address, labels=("SENT",))

    response = await client.post(
        f"/mailboxes/{mailbox.id}/threads/t1/reply",
        headers=INTERNAL_HEADERS,
        json={"reply_text": "Hello"},
    )

    assert response.status_code == 422
    assert gmail.sent == []


def test_reply_recipient_skips_own_messages(gmail):
    gmail.add_message("t1", gmail_id="m1", sender="Bob <BOB@customer.com>")
    gmail.add_message("t1", gmail_id="m2", sender="Alice <alice@customer.com>")
    gmail.add_message("t1", gmail_id="r1", sender=gmail.email_address)
    snapshot = reply_service.snapshot_from_gmail_thread(
        {"id": "t1", "messages": gmail.threads["t1"]}
    )

    assert manual_reply_service.reply_recipient(snapshot, gmail.email_address) == "alice@customer.com"
