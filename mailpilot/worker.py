"""
Background worker for processing scheduled jobs.

Usage:
    python -m mailpilot.worker

The worker polls for pending jobs and processes them. Jobs for different
mailboxes run concurrently; jobs sharing a lock_key never overlap.
"""

import logging
from uuid import UUID

import anyio

from mailpilot.core.config import settings
from mailpilot.core.structured_logging import build_log_context
from mailpilot.db.session import SessionLocal
from mailpilot.jobs.registry import resolve_job_handler
from mailpilot.services import job_service

logging.basicConfig(
    level=getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO),
    format="%(asctime)s [%(levelname)s] %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)
logger = logging.getLogger(__name__)

if settings.SENTRY_DSN and not settings.is_dev:
    import sentry_sdk

    sentry_sdk.init(dsn=settings.SENTRY_DSN, environment=settings.ENV, send_default_pii=False)


async def process_job(db, job) -> None:
    """Process a single job based on its type."""
    logger.info(
        "Processing job %s (type=%s, attempt=%s)",
        job.id,
        job.job_type,
        job.attempts,
        extra=build_log_context(job_id=job.id),
    )
    handler = resolve_job_handler(job.job_type)
    await handler(db, job)


async def run_claimed_job(job_id: UUID) -> None:
    """Run one claimed job in its own session and record the outcome."""
    with SessionLocal() as db:
        job = job_service.get_job(db, job_id)
        if job is None:
            return
        try:
            await process_job(db, job)
        except Exception as e:
            db.rollback()
            job_service.mark_job_failed(db, job, f"{type(e).__name__}: {e}")
            logger.error(
                "Job %s failed: %s",
                job.id,
                type(e).__name__,
                extra=build_log_context(job_id=job.id),
            )
            if settings.SENTRY_DSN and not settings.is_dev:
                import sentry_sdk

                sentry_sdk.capture_exception(e)
            return
        job_service.mark_job_completed(db, job)
        logger.info("Job %s completed successfully", job.id)


async def run_once(limiter: anyio.CapacityLimiter | None = None) -> int:
    """Claim one batch of due jobs and run it to completion."""
    limiter = limiter or anyio.CapacityLimiter(max(1, settings.WORKER_CONCURRENCY))
    with SessionLocal() as db:
        job_ids = [job.id for job in job_service.claim_pending_jobs(db, limit=settings.WORKER_BATCH_SIZE)]
    if not job_ids:
        return 0
    logger.info("Found %s pending jobs", len(job_ids))

    async def _guarded(job_id: UUID) -> None:
        async with limiter:
            await run_claimed_job(job_id)

    async with anyio.create_task_group() as tg:
        for job_id in job_ids:
            tg.start_soon(_guarded, job_id)
    return len(job_ids)


async def worker_loop() -> None:
    """Main worker loop - polls for and processes pending jobs."""
    logger.info(
        "Worker starting (poll interval: %ss, batch size: %s, concurrency: %s)",
        settings.WORKER_POLL_INTERVAL,
        settings.WORKER_BATCH_SIZE,
        settings.WORKER_CONCURRENCY,
    )
    limiter = anyio.CapacityLimiter(max(1, settings.WORKER_CONCURRENCY))
    while True:
        try:
            await run_once(limiter)
        except Exception as e:
            logger.error("Error in worker loop: %s", e)
        await anyio.sleep(settings.WORKER_POLL_INTERVAL)


def main() -> None:
    anyio.run(worker_loop)


if __name__ == "__main__":
    main()
