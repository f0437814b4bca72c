"""Shared-secret checks for internal and webhook endpoints."""

import hmac

from fastapi import Header, HTTPException

from mailpilot.core.config import settings


def verify_secret(provided: str | None, expected: str | None) -> bool:
    """Constant-time comparison that rejects empty values."""
    if not provided or not expected:
        return False
    return hmac.compare_digest(provided.encode(), expected.encode())


def require_internal_secret(x_internal_secret: str = Header(...)) -> None:
    """Dependency guarding /internal and /mailboxes endpoints."""
    if not settings.INTERNAL_SECRET:
        raise HTTPException(status_code=501, detail="INTERNAL_SECRET not configured")
    if not verify_secret(x_internal_secret, settings.INTERNAL_SECRET):
        raise HTTPException(status_code=403, detail="Invalid internal secret")
