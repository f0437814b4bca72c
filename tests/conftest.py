"""
Test configuration and fixtures.

Provides:
- A throwaway SQLite database (tables recreated for each test)
- An in-memory Gmail API (httpx.MockTransport) wired into every GmailFetcher
- A scripted completion client
- HTTPX AsyncClient against the app
"""
import base64
import json
import os
import tempfile
import time
import uuid
from typing import AsyncGenerator, Generator

from cryptography.fernet import Fernet

_TEST_DIR = tempfile.mkdtemp(prefix="mailpilot-tests-")
os.environ["TESTING"] = "1"
os.environ["ENV"] = "test"
os.environ["DATABASE_URL"] = f"sqlite:///{os.path.join(_TEST_DIR, 'test.db')}"
os.environ["FERNET_KEY"] = Fernet.generate_key().decode()
os.environ["INTERNAL_SECRET"] = "test-internal-secret"
os.environ["GMAIL_PUSH_TOPIC"] = ""
os.environ["GMAIL_PUSH_VERIFICATION_TOKEN"] = ""
os.environ["API_BASE_URL"] = "https://api.example.com"

import httpx
import pytest
from httpx import ASGITransport, AsyncClient
from sqlalchemy.orm import Session

from mailpilot.core.deps import get_db, get_thread_cache
from mailpilot.db.base import Base
from mailpilot.db.models import MailboxWatch
from mailpilot.db.session import SessionLocal, engine
from mailpilot.main import app
from mailpilot.services import credential_service, reconcile_service
from mailpilot.services.gmail_fetcher import GmailFetcher

MAILBOX_ADDRESS = "inbox@example.com"


# =============================================================================
# Database Fixtures
# =============================================================================


@pytest.fixture(scope="function")
def db() -> Generator[Session, None, None]:
    """
    Fresh schema per test.

    Services commit freely and background tasks open their own
    SessionLocal(), so tests use a real file database instead of a
    rolled-back savepoint.
    """
    Base.metadata.create_all(bind=engine)
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()
        Base.metadata.drop_all(bind=engine)


@pytest.fixture(scope="function")
def mailbox(db: Session) -> MailboxWatch:
    """An enabled mailbox with a valid (not yet expiring) credential."""
    mailbox = MailboxWatch(id=uuid.uuid4(), email_address=MAILBOX_ADDRESS, is_enabled=True)
    db.add(mailbox)
    db.commit()
    credential_service.save_credential(
        db,
        mailbox,
        access_token="access-token",
        refresh_token="refresh-token",
        expires_in=3600,
    )
    db.refresh(mailbox)
    return mailbox


# =============================================================================
# Gmail API fake
# =============================================================================


def _b64url(text: str) -> str:
    return base64.urlsafe_b64encode(text.encode("utf-8")).decode("ascii").rstrip("=")


class FakeGmail:
    """Just enough of users.* to drive the services end to end."""

    def __init__(self, email_address: str = MAILBOX_ADDRESS) -> None:
        self.email_address = email_address
        self.history_id = 1000
        self.history: list[dict] = []
        self.history_expired = False
        self.threads: dict[str, list[dict]] = {}
        self.messages: dict[str, dict] = {}
        self.sent: list[dict] = []
        self.requests: list[httpx.Request] = []
        self.queued: list[httpx.Response] = []
        self.send_failures: list[httpx.Response] = []  # returned by messages.send first
        self.sleeps: list[float] = []
        self.client = httpx.Client(transport=httpx.MockTransport(self.handler))
        self._clock_ms = 1_700_000_000_000

    # -- fixtures -----------------------------------------------------------

    def _next_ms(self) -> int:
        self._clock_ms += 1000
        return self._clock_ms

    def _record_history(self, message: dict) -> None:
        self.history_id += 1
        self.history.append(
            {
                "id": str(self.history_id),
                "messagesAdded": [
                    {
                        "message": {
                            "id": message["id"],
                            "threadId": message["threadId"],
                            "labelIds": list(message["labelIds"]),
                        }
                    }
                ],
            }
        )

    def add_message(
        self,
        thread_id: str,
        *,
        gmail_id: str,
        sender: str = "Alice Smith <alice@customer.com>",
        subject: str = "Question about pricing",
        body: str = "Hi, what does the premium plan cost?",
        message_id: str | None = "",
        references: str | None = None,
        labels: tuple[str, ...] = ("INBOX", "UNREAD"),
        record_history: bool = True,
        internal_date_ms: int | None = None,
    ) -> dict:
        headers = [
            {"name": "From", "value": sender},
            {"name": "To", "value": self.email_address},
            {"name": "Subject", "value": subject},
        ]
        if message_id == "":
            message_id = f"<{gmail_id}@mail.example.com>"
        if message_id:
            headers.append({"name": "Message-ID", "value": message_id})
        if references:
            headers.append({"name": "References", "value": references})
        message = {
            "id": gmail_id,
            "threadId": thread_id,
            "labelIds": list(labels),
            "snippet": body[:80],
            "internalDate": str(internal_date_ms or self._next_ms()),
            "payload": {
                "mimeType": "text/plain",
                "headers": headers,
                "body": {"data": _b64url(body)},
            },
        }
        self.threads.setdefault(thread_id, []).append(message)
        self.messages[gmail_id] = message
        if record_history:
            self._record_history(message)
        return message

    def sent_message(self, index: int = -1):
        """Parsed RFC-5322 message of a users.messages.send call."""
        import email

        raw = self.sent[index]["raw"]
        padded = raw + "=" * (-len(raw) % 4)
        return email.message_from_bytes(base64.urlsafe_b64decode(padded))

    def mark_read(self, gmail_id: str) -> None:
        labels = self.messages[gmail_id]["labelIds"]
        if "UNREAD" in labels:
            labels.remove("UNREAD")

    def fetcher_kwargs(self) -> dict:
        return {"http_client": self.client, "sleep": self.sleeps.append}

    # -- transport ----------------------------------------------------------

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if self.queued:
            return self.queued.pop(0)

        path = request.url.path.removeprefix("/gmail/v1/users/me")
        if path == "/profile":
            return httpx.Response(
                200, json={"emailAddress": self.email_address, "historyId": str(self.history_id)}
            )
        if path == "/watch":
            expiration = int((time.time() + 7 * 86400) * 1000)
            return httpx.Response(
                200, json={"historyId": str(self.history_id), "expiration": str(expiration)}
            )
        if path == "/stop":
            return httpx.Response(204)
        if path == "/history":
            if self.history_expired:
                return httpx.Response(404, json={"error": {"message": "Requested entity was not found."}})
            start = int(request.url.params["startHistoryId"])
            records = [record for record in self.history if int(record["id"]) > start]
            return httpx.Response(200, json={"history": records, "historyId": str(self.history_id)})
        if path == "/threads":
            return httpx.Response(
                200, json={"threads": [{"id": thread_id} for thread_id in self.threads]}
            )
        if path.startswith("/threads/"):
            thread_id = path.split("/")[2]
            if thread_id not in self.threads:
                return httpx.Response(404, json={"error": {"message": "Not Found"}})
            return httpx.Response(200, json={"id": thread_id, "messages": self.threads[thread_id]})
        if path == "/messages/send":
            if self.send_failures:
                return self.send_failures.pop(0)
            return self._send(json.loads(request.content))
        if path.startswith("/messages/"):
            gmail_id = path.split("/")[2]
            if gmail_id not in self.messages:
                return httpx.Response(404, json={"error": {"message": "Not Found"}})
            message = self.messages[gmail_id]
            return httpx.Response(
                200,
                json={"id": gmail_id, "threadId": message["threadId"], "labelIds": message["labelIds"]},
            )
        return httpx.Response(404, json={"error": {"message": f"Unhandled {path}"}})

    def _send(self, body: dict) -> httpx.Response:
        self.sent.append(body)
        gmail_id = f"sent-{len(self.sent)}"
        thread_id = body.get("threadId") or f"thread-{gmail_id}"
        parsed = self.sent_message()
        self.add_message(
            thread_id,
            gmail_id=gmail_id,
            sender=self.email_address,
            subject=str(parsed["Subject"]),
            body="(reply)",
            labels=("SENT", "UNREAD"),
            internal_date_ms=int(time.time() * 1000),
        )
        return httpx.Response(200, json={"id": gmail_id, "threadId": thread_id, "labelIds": ["SENT"]})


@pytest.fixture(scope="function")
def gmail(monkeypatch) -> Generator[FakeGmail, None, None]:
    """Route every GmailFetcher the services build to the fake."""
    fake = FakeGmail()

    def _fetcher(access_token: str, **kwargs):
        kwargs.setdefault("http_client", fake.client)
        kwargs.setdefault("sleep", fake.sleeps.append)
        return GmailFetcher(access_token, **kwargs)

    monkeypatch.setattr(credential_service, "GmailFetcher", _fetcher)
    yield fake
    fake.client.close()


# =============================================================================
# Completion fake
# =============================================================================


class FakeCompletion:
    """Scripted CompletionClient; classifies on the email text only."""

    def __init__(self, label: str = "Direct Inquiry", reply: str = "Thanks for reaching out!") -> None:
        self.label = label
        self.reply = reply
        self.prompts: list[str] = []
        self.conversations: list[tuple[str, bool]] = []

    def classify(self, prompt: str) -> str:
        self.prompts.append(prompt)
        return self.label

    def generate_reply(self, conversation_text: str, *, follow_up: bool = False) -> str:
        self.conversations.append((conversation_text, follow_up))
        return self.reply


@pytest.fixture(scope="function")
def completion(monkeypatch) -> FakeCompletion:
    fake = FakeCompletion()
    monkeypatch.setattr(reconcile_service, "get_completion_service", lambda: fake)
    from mailpilot.services import follow_up_service, manual_reply_service

    monkeypatch.setattr(follow_up_service, "get_completion_service", lambda: fake)
    monkeypatch.setattr(manual_reply_service, "get_completion_service", lambda: fake)
    return fake


# =============================================================================
# Client Fixtures
# =============================================================================


@pytest.fixture(scope="function")
async def client(db: Session) -> AsyncGenerator[AsyncClient, None]:
    """AsyncClient for the app, sharing the test session."""

    def override_get_db():
        yield db

    app.dependency_overrides[get_db] = override_get_db
    get_thread_cache.cache_clear()

    async with AsyncClient(
        transport=ASGITransport(app=app),
        base_url="http://test",
    ) as c:
        yield c

    app.dependency_overrides.clear()
    get_thread_cache.cache_clear()
