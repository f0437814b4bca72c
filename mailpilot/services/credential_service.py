"""Credential store for connected mailboxes.

Tokens are Fernet-encrypted at rest. A refresh is persisted in a single
commit (access token, rotated refresh token and expiry together) so other
sessions never read a half-updated pair.
"""

from __future__ import annotations

import logging
import uuid
from contextlib import contextmanager
from datetime import datetime, timedelta, timezone
from typing import Any, Iterator

from sqlalchemy import select
from sqlalchemy.orm import Session

from mailpilot.core.async_utils import run_async
from mailpilot.core.encryption import decrypt_token, encrypt_token
from mailpilot.core.locks import KeyedLock
from mailpilot.core.structured_logging import build_log_context
from mailpilot.db.models import MailboxCredential, MailboxWatch
from mailpilot.services import oauth_service
from mailpilot.services.errors import ReauthorizationRequired
from mailpilot.services.gmail_fetcher import GmailFetcher
from mailpilot.services.oauth_service import RefreshResult
from mailpilot.utils.datetime_parsing import as_utc

logger = logging.getLogger(__name__)

# Refresh a little before Google's expiry so in-flight calls don't 401.
_EXPIRY_SKEW = timedelta(seconds=60)

_refresh_locks = KeyedLock()


def _now_utc() -> datetime:
    return datetime.now(timezone.utc)


def get_credential(db: Session, mailbox_id: uuid.UUID) -> MailboxCredential | None:
    return db.scalar(
        select(MailboxCredential).where(MailboxCredential.mailbox_id == mailbox_id)
    )


def save_credential(
    db: Session,
    mailbox: MailboxWatch,
    *,
    access_token: str,
    refresh_token: str,
    expires_in: int | None = None,
    scopes: list[str] | None = None,
) -> MailboxCredential:
    """Store (or replace) the token pair for a mailbox and clear any invalidation."""
    credential = get_credential(db, mailbox.id)
    now = _now_utc()
    if credential is None:
        credential = MailboxCredential(mailbox_id=mailbox.id)
        db.add(credential)
    credential.access_token_encrypted = encrypt_token(access_token)
    credential.refresh_token_encrypted = encrypt_token(refresh_token)
    credential.token_expires_at = now + timedelta(seconds=expires_in) if expires_in else None
    credential.granted_scopes = scopes
    credential.invalidated_at = None
    credential.invalidation_reason = None
    credential.updated_at = now
    db.commit()
    db.refresh(credential)
    return credential


def invalidate_credential(db: Session, credential: MailboxCredential, *, reason: str) -> None:
    """Clear tokens after a hard authorization failure; reconnect is external."""
    credential.access_token_encrypted = None
    credential.refresh_token_encrypted = None
    credential.token_expires_at = None
    credential.invalidated_at = _now_utc()
    credential.invalidation_reason = reason[:500]
    credential.updated_at = _now_utc()
    db.commit()
    logger.warning(
        "Mailbox credential invalidated",
        extra=build_log_context(mailbox_id=credential.mailbox_id),
    )


def needs_refresh(credential: MailboxCredential, *, now: datetime | None = None) -> bool:
    if not credential.access_token_encrypted:
        return True
    expires_at = as_utc(credential.token_expires_at)
    if expires_at is None:
        return False
    return expires_at <= (now or _now_utc()) + _EXPIRY_SKEW


def refresh_access_token(credential: MailboxCredential) -> RefreshResult:
    """Ask Google for a new access token. Does not touch the database."""
    refresh_token = decrypt_token(credential.refresh_token_encrypted or "")
    if not refresh_token:
        raise ReauthorizationRequired("Mailbox has no refresh token")
    return run_async(oauth_service.refresh_gmail_token(refresh_token))


def persist_refresh(db: Session, credential: MailboxCredential, result: RefreshResult) -> None:
    credential.access_token_encrypted = encrypt_token(result.access_token)
    if result.refresh_token:
        credential.refresh_token_encrypted = encrypt_token(result.refresh_token)
    credential.token_expires_at = result.expires_at
    if result.scopes:
        credential.granted_scopes = result.scopes
    credential.updated_at = _now_utc()
    db.commit()


def resolve_access_token(db: Session, mailbox: MailboxWatch) -> str:
    """Return a usable access token, refreshing and persisting it if needed."""
    credential = get_credential(db, mailbox.id)
    if credential is None or not credential.is_usable:
        raise ReauthorizationRequired("Mailbox has no usable credential")

    if needs_refresh(credential):
        with _refresh_locks.hold(str(credential.id)):
            # Another session may have refreshed while we waited.
            db.refresh(credential)
            if not credential.is_usable:
                raise ReauthorizationRequired("Mailbox has no usable credential")
            if needs_refresh(credential):
                try:
                    result = refresh_access_token(credential)
                except ReauthorizationRequired as exc:
                    invalidate_credential(db, credential, reason=str(exc))
                    raise
                persist_refresh(db, credential, result)

    return decrypt_token(credential.access_token_encrypted or "")


@contextmanager
def authorized_fetcher(
    db: Session,
    mailbox: MailboxWatch,
    **fetcher_kwargs: Any,
) -> Iterator[GmailFetcher]:
    """Yield a GmailFetcher for the mailbox.

    A 401 anywhere inside the block invalidates the stored credential and
    re-raises ReauthorizationRequired.
    """
    access_token = resolve_access_token(db, mailbox)
    fetcher = GmailFetcher(access_token, **fetcher_kwargs)
    try:
        yield fetcher
    except ReauthorizationRequired as exc:
        credential = get_credential(db, mailbox.id)
        if credential is not None and credential.invalidated_at is None:
            invalidate_credential(db, credential, reason=str(exc))
        raise
    finally:
        fetcher.close()
