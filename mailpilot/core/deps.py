"""FastAPI dependencies."""

from functools import lru_cache
from typing import Generator

from sqlalchemy.orm import Session

from mailpilot.core.config import settings
from mailpilot.db.session import SessionLocal
from mailpilot.services.fetch_cache import TTLCache


def get_db() -> Generator[Session, None, None]:
    """
    Database session dependency.

    Yields a database session and ensures it's closed after the request.
    """
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


@lru_cache
def get_thread_cache() -> TTLCache:
    """Process-wide cache for the recent-threads view (override in tests)."""
    return TTLCache(settings.THREAD_LIST_CACHE_TTL_SECONDS)
