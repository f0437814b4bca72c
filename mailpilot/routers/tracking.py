"""
Email Tracking Router.

Public endpoints for recording opens and clicks on dispatched replies.
These endpoints must be unauthenticated since they're called from email clients.
"""

import logging
from uuid import UUID

from fastapi import APIRouter, Depends, Response
from fastapi.responses import RedirectResponse
from sqlalchemy.orm import Session

from mailpilot.core.deps import get_db
from mailpilot.services import tracking_service


logger = logging.getLogger(__name__)

router = APIRouter(prefix="/track", tags=["tracking"])


# 1x1 transparent GIF
TRANSPARENT_GIF = bytes.fromhex(
    "47494638396101000100800000ffffff00000021f90401000000002c00000000010001000002024401003b"
)

_NO_CACHE_HEADERS = {
    "Cache-Control": "no-store, no-cache, must-revalidate, max-age=0",
    "Pragma": "no-cache",
    "Expires": "0",
}


@router.get("/open/{dispatch_log_id}")
def track_open(dispatch_log_id: str, db: Session = Depends(get_db)) -> Response:
    """
    Record an open and return a 1x1 transparent GIF.

    Called when the email client loads the tracking pixel.
    """
    # Record the open (best effort, the pixel is always served)
    try:
        tracking_service.record_open(db, UUID(dispatch_log_id))
    except ValueError:
        logger.info("Tracking pixel hit with malformed id")
    except Exception:
        db.rollback()
        logger.warning("Failed to record open", exc_info=True)

    return Response(
        content=TRANSPARENT_GIF,
        media_type="image/gif",
        headers=_NO_CACHE_HEADERS,
    )


@router.get("/click/{dispatch_log_id}")
def track_click(
    dispatch_log_id: str,
    url: str | None = None,
    db: Session = Depends(get_db),
) -> Response:
    """Record a click and redirect to the target URL."""
    try:
        tracking_service.record_click(db, UUID(dispatch_log_id))
    except ValueError:
        logger.info("Click tracking hit with malformed id")
    except Exception:
        db.rollback()
        logger.warning("Failed to record click", exc_info=True)

    return RedirectResponse(
        url=tracking_service.safe_redirect_url(url),
        status_code=302,
        headers=_NO_CACHE_HEADERS,
    )
