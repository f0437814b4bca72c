"""Mailbox management endpoints (connect, watch, reconcile, threads, replies, stats).

Protected by X-Internal-Secret; the OAuth consent flow itself lives outside
this service and posts the resulting tokens here.
"""

import logging
import math
from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException, Response
from sqlalchemy.orm import Session

from mailpilot.core.deps import get_db, get_thread_cache
from mailpilot.core.security import require_internal_secret
from mailpilot.db.models import MailboxWatch
from mailpilot.schemas.mailbox import (
    MailboxConnect,
    MailboxRead,
    ReconcileRead,
    ThreadDetailResponse,
    ThreadListResponse,
    ThreadMessageRead,
    ThreadReplyCreate,
    ThreadReplyRead,
    ThreadSummary,
    TrackingStatsRead,
    WatchRead,
)
from mailpilot.services import (
    connection_service,
    credential_service,
    mailbox_service,
    manual_reply_service,
    reconcile_service,
    reply_service,
    tracking_service,
    watch_service,
)
from mailpilot.services.errors import (
    MailpilotError,
    ReauthorizationRequired,
    ThreadIntegrityError,
    UpstreamError,
    UpstreamThrottled,
)
from mailpilot.services.fetch_cache import TTLCache
from mailpilot.services.watch_service import WatchNotConfigured

logger = logging.getLogger(__name__)

router = APIRouter(
    prefix="/mailboxes",
    tags=["mailboxes"],
    dependencies=[Depends(require_internal_secret)],
)


def _get_mailbox_or_404(db: Session, mailbox_id: UUID) -> MailboxWatch:
    mailbox = mailbox_service.get_mailbox(db, mailbox_id)
    if mailbox is None:
        raise HTTPException(status_code=404, detail="Mailbox not found")
    return mailbox


def _http_error(exc: MailpilotError) -> HTTPException:
    if isinstance(exc, ReauthorizationRequired):
        return HTTPException(status_code=409, detail="Mailbox reauthorization required")
    if isinstance(exc, UpstreamThrottled):
        headers = None
        if exc.retry_after is not None:
            headers = {"Retry-After": str(max(1, math.ceil(exc.retry_after)))}
        return HTTPException(
            status_code=503,
            detail="Gmail rate limit exceeded, try again later",
            headers=headers,
        )
    if isinstance(exc, WatchNotConfigured):
        return HTTPException(status_code=501, detail=str(exc))
    if isinstance(exc, manual_reply_service.AlreadyReplied):
        return HTTPException(status_code=409, detail=str(exc))
    if isinstance(exc, ThreadIntegrityError):
        return HTTPException(status_code=422, detail=str(exc))
    if isinstance(exc, UpstreamError) and exc.status_code == 404:
        return HTTPException(status_code=404, detail="Thread not found")
    if isinstance(exc, UpstreamError):
        return HTTPException(status_code=502, detail=f"Gmail API error {exc.status_code}")
    return HTTPException(status_code=502, detail=str(exc))


def _mailbox_read(db: Session, mailbox: MailboxWatch) -> MailboxRead:
    credential = credential_service.get_credential(db, mailbox.id)
    usable = credential is not None and credential.is_usable
    return MailboxRead.model_validate(mailbox).model_copy(
        update={
            "credential_valid": usable,
            "reauthorization_required": credential is not None and not usable,
        }
    )


@router.post("", response_model=MailboxRead, status_code=201)
def connect_mailbox(data: MailboxConnect, db: Session = Depends(get_db)):
    """Store tokens for a mailbox, start its watch and queue a first reconcile."""
    mailbox = connection_service.connect_mailbox(
        db,
        email_address=data.email_address,
        access_token=data.access_token,
        refresh_token=data.refresh_token,
        expires_in=data.expires_in,
        scopes=data.scopes,
        display_name=data.display_name,
    )
    return _mailbox_read(db, mailbox)


@router.get("/{mailbox_id}", response_model=MailboxRead)
def get_mailbox_status(mailbox_id: UUID, db: Session = Depends(get_db)):
    mailbox = _get_mailbox_or_404(db, mailbox_id)
    return _mailbox_read(db, mailbox)


@router.delete("/{mailbox_id}", status_code=204)
def disconnect_mailbox(mailbox_id: UUID, db: Session = Depends(get_db)) -> Response:
    mailbox = _get_mailbox_or_404(db, mailbox_id)
    connection_service.disconnect_mailbox(db, mailbox)
    return Response(status_code=204)


@router.post("/{mailbox_id}/watch", response_model=WatchRead)
def start_watch(mailbox_id: UUID, db: Session = Depends(get_db)):
    mailbox = _get_mailbox_or_404(db, mailbox_id)
    try:
        result = watch_service.start_watch(db, mailbox)
    except MailpilotError as exc:
        raise _http_error(exc) from exc
    return WatchRead(cursor=result.cursor, channel_id=result.channel_id, expires_at=result.expires_at)


@router.post("/{mailbox_id}/reconcile", response_model=ReconcileRead)
def reconcile_now(mailbox_id: UUID, db: Session = Depends(get_db)):
    """Run one reconciliation synchronously (the push path queues it instead)."""
    _get_mailbox_or_404(db, mailbox_id)
    try:
        result = reconcile_service.reconcile_mailbox(db, mailbox_id, reason="manual")
    except MailpilotError as exc:
        raise _http_error(exc) from exc
    return ReconcileRead(
        new_inbound_events=len(result.new_inbound_events),
        new_cursor=result.new_cursor,
        rebaselined=result.rebaselined,
        outcomes=result.outcomes,
    )


@router.get("/{mailbox_id}/threads", response_model=ThreadListResponse)
def list_threads(
    mailbox_id: UUID,
    db: Session = Depends(get_db),
    cache: TTLCache = Depends(get_thread_cache),
):
    """Recent inbox threads; a throttled Gmail serves the last cached list."""
    mailbox = _get_mailbox_or_404(db, mailbox_id)
    try:
        summaries, stale = mailbox_service.list_recent_threads(db, mailbox, cache)
    except MailpilotError as exc:
        raise _http_error(exc) from exc
    return ThreadListResponse(
        items=[ThreadSummary(**summary) for summary in summaries],
        stale=stale,
    )


@router.get("/{mailbox_id}/threads/{thread_id}", response_model=ThreadDetailResponse)
def get_thread(mailbox_id: UUID, thread_id: str, db: Session = Depends(get_db)):
    mailbox = _get_mailbox_or_404(db, mailbox_id)
    try:
        with credential_service.authorized_fetcher(db, mailbox) as fetcher:
            snapshot = reply_service.snapshot_from_gmail_thread(fetcher.get_thread(thread_id))
    except MailpilotError as exc:
        raise _http_error(exc) from exc
    return ThreadDetailResponse(
        thread_id=snapshot.thread_id,
        messages=[
            ThreadMessageRead(
                gmail_id=m.gmail_id,
                sender=m.sender,
                subject=m.subject,
                body=m.body,
                internal_date_ms=m.internal_date_ms,
            )
            for m in snapshot.messages
        ],
    )


@router.post(
    "/{mailbox_id}/threads/{thread_id}/reply",
    response_model=ThreadReplyRead,
    status_code=201,
)
def reply_to_thread(
    mailbox_id: UUID,
    thread_id: str,
    data: ThreadReplyCreate,
    db: Session = Depends(get_db),
):
    """Send an operator reply into the thread; it is tracked like an automatic one."""
    mailbox = _get_mailbox_or_404(db, mailbox_id)
    try:
        result = manual_reply_service.send_manual_reply(db, mailbox, thread_id, data.reply_text)
    except MailpilotError as exc:
        raise _http_error(exc) from exc
    return ThreadReplyRead(
        dispatch_log_id=result.log.id,
        status=result.log.status,
        gmail_message_id=result.log.gmail_message_id,
        recipient_email=result.log.recipient_email,
        reply_text=result.reply_text,
        generated=result.generated,
    )


@router.get("/{mailbox_id}/stats", response_model=TrackingStatsRead)
def get_tracking_stats(mailbox_id: UUID, db: Session = Depends(get_db)):
    _get_mailbox_or_404(db, mailbox_id)
    stats = tracking_service.tracking_stats(db, mailbox_id)
    return TrackingStatsRead.model_validate(stats)
