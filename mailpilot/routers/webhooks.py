"""Webhooks router - Gmail Pub/Sub push endpoint."""

import logging

from fastapi import APIRouter, BackgroundTasks, HTTPException, Query, Request, Response

from mailpilot.core.config import settings
from mailpilot.core.rate_limit import limiter, webhook_limit
from mailpilot.core.security import verify_secret
from mailpilot.db.session import SessionLocal
from mailpilot.services import notification_service
from mailpilot.services.notification_service import PushNotification

router = APIRouter()
logger = logging.getLogger(__name__)


def _process_push(notification: PushNotification) -> None:
    """Runs after the 204 went out; Pub/Sub never waits on it."""
    with SessionLocal() as db:
        try:
            result = notification_service.handle_gmail_push(db, notification)
        except Exception:
            db.rollback()
            logger.exception("Gmail push handling failed")
            return
    logger.info("Gmail push %s", result.get("status"))


@router.post("/google-gmail", status_code=204)
@limiter.limit(webhook_limit)
async def receive_google_gmail_push(
    request: Request,
    background_tasks: BackgroundTasks,
    token: str | None = Query(None),
) -> Response:
    """
    Receive a Gmail users.watch notification via Pub/Sub push.

    Acknowledges with 204 before any processing; the mailbox lookup and job
    enqueue happen in a background task.
    """
    expected = settings.GMAIL_PUSH_VERIFICATION_TOKEN
    if expected and not verify_secret(token, expected):
        logger.warning("Gmail push with invalid verification token")
        raise HTTPException(status_code=403, detail="Invalid token")

    try:
        envelope = await request.json()
    except ValueError:
        envelope = None
    notification = notification_service.decode_push_envelope(envelope)
    if notification is None:
        logger.warning("Gmail push envelope could not be decoded")
    else:
        background_tasks.add_task(_process_push, notification)
    return Response(status_code=204)
