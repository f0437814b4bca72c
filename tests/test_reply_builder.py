from __future__ import annotations

import base64
import email
import uuid

import pytest

from mailpilot.services import reply_service
from mailpilot.services.errors import ThreadIntegrityError
from mailpilot.services.reply_service import ThreadMessage, ThreadSnapshot


def _b64(text: str) -> str:
    return base64.urlsafe_b64encode(text.encode()).decode().rstrip("=")


def _msg(gmail_id: str, message_id: str | None, *, sender="Bob <bob@example.com>", subject="Hello", references=()):
    return ThreadMessage(
        gmail_id=gmail_id,
        message_id=message_id,
        sender=sender,
        sender_email="bob@example.com",
        subject=subject,
        body="body",
        references=tuple(references),
    )


@pytest.mark.parametrize(
    "subject,expected",
    [
        ("Hello", "Re: Hello"),
        ("Re: Hello", "Re: Hello"),
        ("RE: re:Hello", "Re: Hello"),
        ("", "Re:"),
    ],
)
def test_reply_subject_has_single_prefix(subject, expected):
    assert reply_service.reply_subject(subject) == expected


def test_reply_subject_is_idempotent():
    once = reply_service.reply_subject("Pricing")
    assert reply_service.reply_subject(once) == once


def test_threading_headers_chain_every_message_id():
    snapshot = ThreadSnapshot(
        thread_id="t1",
        messages=(_msg("g1", "<A>"), _msg("g2", "<B>"), _msg("g3", "<C>")),
    )
    in_reply_to, references = reply_service.threading_headers(snapshot)
    assert in_reply_to == "<C>"
    assert references == "<A> <B> <C>"


def test_threading_headers_keep_existing_references_first():
    snapshot = ThreadSnapshot(
        thread_id="t1",
        messages=(_msg("g2", "<B>"), _msg("g3", "<C>", references=("<A>", "<B>"))),
    )
    _, references = reply_service.threading_headers(snapshot)
    assert references == "<A> <B> <C>"


def test_threading_headers_require_message_id_on_last():
    snapshot = ThreadSnapshot(thread_id="t1", messages=(_msg("g1", "<A>"), _msg("g2", None)))
    with pytest.raises(ThreadIntegrityError):
        reply_service.threading_headers(snapshot)


def test_empty_thread_has_no_last_message():
    with pytest.raises(ThreadIntegrityError):
        ThreadSnapshot(thread_id="t1", messages=()).last


def test_build_reply_is_threaded_multipart_with_pixel():
    snapshot = ThreadSnapshot(
        thread_id="t1",
        messages=(_msg("g1", "<A>"), _msg("g2", "<B>", subject="Re: Hello")),
    )
    log_id = uuid.uuid4()
    outbound = reply_service.build_reply(
        snapshot,
        "Thanks <3\nSee you",
        from_address="inbox@example.com",
        dispatch_log_id=log_id,
        base_url="https://api.example.com/",
    )

    assert outbound.recipient == "bob@example.com"
    assert outbound.subject == "Re: Hello"
    assert outbound.thread_id == "t1"

    parsed = email.message_from_bytes(outbound.raw)
    assert parsed.get_content_type() == "multipart/alternative"
    assert parsed["In-Reply-To"] == "<B>"
    assert parsed["References"] == "<A> <B>"
    assert parsed["To"] == "bob@example.com"
    parts = {part.get_content_type(): part.get_payload(decode=True).decode() for part in parsed.get_payload()}
    assert parts["text/plain"] == "Thanks <3\nSee you"
    assert "Thanks &lt;3<br>See you" in parts["text/html"]
    assert f"https://api.example.com/track/open/{log_id}" in parts["text/html"]


def test_build_reply_uses_explicit_recipient():
    snapshot = ThreadSnapshot(thread_id="t1", messages=(_msg("g1", "<A>"),))
    outbound = reply_service.build_reply(
        snapshot,
        "Just checking in",
        from_address="inbox@example.com",
        dispatch_log_id=uuid.uuid4(),
        base_url="https://api.example.com",
        recipient="carol@example.com",
    )
    assert outbound.recipient == "carol@example.com"


def test_extract_body_walks_nested_parts_without_leaking_state():
    payload = {
        "mimeType": "multipart/mixed",
        "parts": [
            {
                "mimeType": "multipart/alternative",
                "parts": [
                    {"mimeType": "text/plain", "body": {"data": _b64("plain one")}},
                    {"mimeType": "text/html", "body": {"data": _b64("<p>html one</p>")}},
                ],
            },
            {"mimeType": "application/pdf", "body": {"attachmentId": "x"}},
        ],
    }
    first = reply_service.extract_body(payload)
    second = reply_service.extract_body(payload)
    assert first.plain == "plain one"
    assert first.html == "<p>html one</p>"
    assert second == first


def test_body_text_falls_back_to_html():
    payload = {
        "mimeType": "text/html",
        "body": {"data": _b64("<style>p{}</style><p>Hello&nbsp;there</p><p>Bye</p>")},
    }
    text = reply_service.body_text(payload)
    assert "Hello" in text and "Bye" in text
    assert "<p>" not in text and "p{}" not in text


def test_clean_text_drops_newsletter_noise():
    raw = "Big news\nClick to unsubscribe\n\n\n\n• Item one\nRead More\n© All rights reserved"
    assert reply_service.clean_text(raw) == "Big news\n\nItem one"


def test_snapshot_from_gmail_thread_parses_headers():
    thread = {
        "id": "t9",
        "messages": [
            {
                "id": "g1",
                "internalDate": "1700000000000",
                "labelIds": ["INBOX"],
                "payload": {
                    "mimeType": "text/plain",
                    "headers": [
                        {"name": "From", "value": "Dana <DANA@Example.com>"},
                        {"name": "Subject", "value": "Hi"},
                        {"name": "Message-Id", "value": "<x1@example.com>"},
                        {"name": "References", "value": "<r1@example.com>\r\n <r2@example.com>"},
                    ],
                    "body": {"data": _b64("hello")},
                },
            }
        ],
    }
    snapshot = reply_service.snapshot_from_gmail_thread(thread)
    last = snapshot.last
    assert last.sender_email == "dana@example.com"
    assert last.message_id == "<x1@example.com>"
    assert last.references == ("<r1@example.com>", "<r2@example.com>")
    assert last.internal_date_ms == 1700000000000
    assert last.is_from("dana@example.com")
    assert reply_service.conversation_text(snapshot) == "From: Dana <DANA@Example.com>\n\nhello"
