"""Thread snapshots and reply construction.

Everything here is pure: Gmail thread JSON in, immutable snapshots and
RFC-5322 bytes out. Network and database work lives in the callers.
"""

from __future__ import annotations

import base64
import binascii
import html
import re
from dataclasses import dataclass
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from email.utils import formatdate
from uuid import UUID

from mailpilot.services.errors import ThreadIntegrityError
from mailpilot.utils.normalization import parse_email_address

_JUNK_LINE_PATTERNS = (
    "unsubscribe",
    "view in browser",
    "update your preferences",
    "no longer wish to receive",
    "all rights reserved",
    "upvotes",
    "comments",
    "hide r/",
    "view more posts",
    "this email was intended for",
    "san francisco, ca",
)
_ENTITY_NOISE_RE = re.compile(r"(&#\d+;|\s*&zwnj;&nbsp;)+")
_READ_MORE_RE = re.compile(r"read more", re.IGNORECASE)
_BLANK_RUN_RE = re.compile(r"(\n\s*){3,}")
_STYLE_SCRIPT_RE = re.compile(r"<(style|script)[^>]*>.*?</\1>", re.IGNORECASE | re.DOTALL)
_BREAK_RE = re.compile(r"<\s*(br|/p|/div|/tr|/li|/h[1-6])\s*/?>", re.IGNORECASE)
_TAG_RE = re.compile(r"<[^>]+>")
_MESSAGE_ID_RE = re.compile(r"<[^<>\s]+>")
_RE_PREFIX_RE = re.compile(r"^\s*(re\s*:\s*)+", re.IGNORECASE)


# =============================================================================
# Body extraction
# =============================================================================


@dataclass(frozen=True)
class MessageBody:
    plain: str = ""
    html: str = ""

    def __add__(self, other: "MessageBody") -> "MessageBody":
        return MessageBody(plain=self.plain + other.plain, html=self.html + other.html)


def _decode_part_data(data: str | None) -> str:
    if not data:
        return ""
    padded = data + "=" * (-len(data) % 4)
    try:
        return base64.urlsafe_b64decode(padded.encode("ascii")).decode("utf-8", errors="replace")
    except (binascii.Error, ValueError):
        return ""


def extract_body(part: dict | None) -> MessageBody:
    """Collect text/plain and text/html content from a Gmail MIME part tree."""
    if not part:
        return MessageBody()
    children = part.get("parts") or []
    if children:
        result = MessageBody()
        for child in children:
            result = result + extract_body(child)
        return result
    data = _decode_part_data((part.get("body") or {}).get("data"))
    mime_type = (part.get("mimeType") or "").lower()
    if mime_type == "text/plain":
        return MessageBody(plain=data)
    if mime_type == "text/html":
        return MessageBody(html=data)
    return MessageBody()


def html_to_text(value: str) -> str:
    text = _STYLE_SCRIPT_RE.sub("", value)
    text = _BREAK_RE.sub("\n", text)
    text = _TAG_RE.sub(" ", text)
    text = html.unescape(text)
    return "\n".join(line.strip() for line in text.splitlines())


def clean_text(text: str) -> str:
    """Drop newsletter boilerplate lines and collapse blank runs."""
    kept = [
        line
        for line in text.split("\n")
        if not any(pattern in line.lower() for pattern in _JUNK_LINE_PATTERNS)
    ]
    cleaned = "\n".join(kept)
    cleaned = _ENTITY_NOISE_RE.sub(" ", cleaned)
    cleaned = _READ_MORE_RE.sub("", cleaned)
    cleaned = cleaned.replace("•", "")
    return _BLANK_RUN_RE.sub("\n\n", cleaned).strip()


def body_text(payload: dict | None) -> str:
    """Readable body: text/plain when present, else tag-stripped HTML."""
    body = extract_body(payload)
    if body.plain.strip():
        return clean_text(body.plain)
    if body.html.strip():
        return clean_text(html_to_text(body.html))
    return ""


# =============================================================================
# Thread snapshot
# =============================================================================


def header_value(headers: list[dict] | None, name: str) -> str | None:
    wanted = name.lower()
    for header in headers or []:
        if str(header.get("name", "")).lower() == wanted:
            return header.get("value")
    return None


@dataclass(frozen=True)
class ThreadMessage:
    gmail_id: str
    message_id: str | None  # RFC-5322 Message-ID, with angle brackets
    sender: str
    sender_email: str | None
    subject: str
    body: str
    references: tuple[str, ...] = ()
    label_ids: tuple[str, ...] = ()
    internal_date_ms: int = 0

    def is_from(self, address: str | None) -> bool:
        return bool(address) and self.sender_email == (address or "").strip().lower()


@dataclass(frozen=True)
class ThreadSnapshot:
    thread_id: str
    messages: tuple[ThreadMessage, ...]

    @property
    def last(self) -> ThreadMessage:
        if not self.messages:
            raise ThreadIntegrityError(f"Thread {self.thread_id} has no messages")
        return self.messages[-1]

    def find(self, gmail_id: str) -> ThreadMessage | None:
        for message in self.messages:
            if message.gmail_id == gmail_id:
                return message
        return None


def _message_from_gmail(message: dict) -> ThreadMessage:
    payload = message.get("payload") or {}
    headers = payload.get("headers") or []
    sender = header_value(headers, "From") or ""
    rfc_id = (header_value(headers, "Message-ID") or "").strip() or None
    references = tuple(_MESSAGE_ID_RE.findall(header_value(headers, "References") or ""))
    try:
        internal_date_ms = int(message.get("internalDate") or 0)
    except (TypeError, ValueError):
        internal_date_ms = 0
    return ThreadMessage(
        gmail_id=str(message.get("id") or ""),
        message_id=rfc_id,
        sender=sender,
        sender_email=parse_email_address(sender),
        subject=header_value(headers, "Subject") or "",
        body=body_text(payload),
        references=references,
        label_ids=tuple(str(label) for label in message.get("labelIds") or []),
        internal_date_ms=internal_date_ms,
    )


def snapshot_from_gmail_thread(thread: dict) -> ThreadSnapshot:
    """Build an immutable snapshot from a users.threads.get (format=full) response."""
    return ThreadSnapshot(
        thread_id=str(thread.get("id") or ""),
        messages=tuple(_message_from_gmail(m) for m in thread.get("messages") or []),
    )


def conversation_text(snapshot: ThreadSnapshot) -> str:
    return "\n\n---\n\n".join(
        f"From: {message.sender}\n\n{message.body}" for message in snapshot.messages
    )


# =============================================================================
# Reply construction
# =============================================================================


def reply_subject(subject: str | None) -> str:
    """Prefix exactly one "Re:" (``"Re: Hello"`` stays ``"Re: Hello"``)."""
    base = _RE_PREFIX_RE.sub("", subject or "").strip()
    return f"Re: {base}" if base else "Re:"


def threading_headers(snapshot: ThreadSnapshot) -> tuple[str, str]:
    """
    Return ``(In-Reply-To, References)`` for a reply to the last message.

    References carries every Message-ID seen in the thread, in order,
    ending with the one being replied to.
    """
    last = snapshot.last
    if not last.message_id:
        raise ThreadIntegrityError(
            f"Last message of thread {snapshot.thread_id} has no Message-ID"
        )
    chain: list[str] = []
    for ref in last.references:
        if ref not in chain:
            chain.append(ref)
    for message in snapshot.messages:
        if message.message_id and message.message_id not in chain:
            chain.append(message.message_id)
    if last.message_id in chain:
        chain.remove(last.message_id)
    chain.append(last.message_id)
    return last.message_id, " ".join(chain)


def tracking_pixel_url(base_url: str, dispatch_log_id: UUID) -> str:
    return f"{base_url.rstrip('/')}/track/open/{dispatch_log_id}"


def render_reply_html(reply_text: str, pixel_url: str) -> str:
    escaped = html.escape(reply_text).replace("\n", "<br>")
    return (
        f"<p>{escaped}</p>"
        f'<img src="{html.escape(pixel_url, quote=True)}" width="1" height="1" alt="">'
    )


@dataclass(frozen=True)
class OutboundMessage:
    raw: bytes
    recipient: str
    subject: str
    in_reply_to: str
    references: str
    thread_id: str


def build_reply(
    snapshot: ThreadSnapshot,
    reply_text: str,
    *,
    from_address: str,
    dispatch_log_id: UUID,
    base_url: str,
    recipient: str | None = None,
) -> OutboundMessage:
    """
    Build a threaded multipart/alternative reply to the last message.

    ``recipient`` defaults to the sender of the last message. The HTML part
    carries a tracking pixel for ``dispatch_log_id``.
    """
    last = snapshot.last
    to_address = recipient or last.sender_email
    if not to_address:
        raise ThreadIntegrityError(
            f"Cannot determine recipient for thread {snapshot.thread_id}"
        )
    in_reply_to, references = threading_headers(snapshot)
    subject = reply_subject(last.subject)

    msg = MIMEMultipart("alternative")
    msg["From"] = from_address
    msg["To"] = to_address
    msg["Subject"] = subject
    msg["Date"] = formatdate(localtime=False)
    msg["In-Reply-To"] = in_reply_to
    msg["References"] = references
    msg.attach(MIMEText(reply_text, "plain", "utf-8"))
    msg.attach(
        MIMEText(
            render_reply_html(reply_text, tracking_pixel_url(base_url, dispatch_log_id)),
            "html",
            "utf-8",
        )
    )
    return OutboundMessage(
        raw=msg.as_bytes(),
        recipient=to_address,
        subject=subject,
        in_reply_to=in_reply_to,
        references=references,
        thread_id=snapshot.thread_id,
    )
