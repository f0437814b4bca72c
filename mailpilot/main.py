"""FastAPI application entry point."""

import logging

from fastapi import FastAPI
from sqlalchemy import text

from mailpilot.core.config import settings
from mailpilot.db.session import engine

logging.basicConfig(
    level=getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO),
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
)

# ============================================================================
# Sentry Integration (optional, for production error tracking)
# ============================================================================

if settings.SENTRY_DSN and not settings.is_dev:
    import sentry_sdk
    from sentry_sdk.integrations.fastapi import FastApiIntegration
    from sentry_sdk.integrations.sqlalchemy import SqlalchemyIntegration

    sentry_sdk.init(
        dsn=settings.SENTRY_DSN,
        environment=settings.ENV,
        integrations=[
            FastApiIntegration(transaction_style="endpoint"),
            SqlalchemyIntegration(),
        ],
        traces_sample_rate=0.1,
        send_default_pii=False,  # Mail content and addresses stay out of Sentry
    )
    logging.info("Sentry initialized for error tracking")

# ============================================================================
# Rate Limiting
# ============================================================================

from slowapi import _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded

from mailpilot.core.rate_limit import limiter

# ============================================================================
# FastAPI App
# ============================================================================

app = FastAPI(
    title="Mailpilot API",
    description="Gmail push ingestion, triage and threaded auto-replies",
    version=settings.VERSION,
    docs_url="/docs" if settings.is_dev else None,
    redoc_url="/redoc" if settings.is_dev else None,
)

app.state.limiter = limiter
app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)

# ============================================================================
# Routers
# ============================================================================

from mailpilot.routers import internal, mailboxes, tracking, webhooks

# Gmail Pub/Sub push (public, optional ?token= check)
app.include_router(webhooks.router, prefix="/webhooks", tags=["webhooks"])

# Open pixel and click redirect (public, called from mail clients)
app.include_router(tracking.router)

# Mailbox management (X-Internal-Secret)
app.include_router(mailboxes.router)

# Scheduled/cron endpoints (X-Internal-Secret)
app.include_router(internal.router)


# ============================================================================
# Health Check
# ============================================================================


@app.get("/health")
def health():
    """
    Health check endpoint.

    Verifies database connectivity and returns environment info.
    """
    with engine.connect() as conn:
        conn.execute(text("SELECT 1"))
    return {"status": "ok", "env": settings.ENV, "version": settings.VERSION}
