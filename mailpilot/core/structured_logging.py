"""Structured logging helpers (PII-safe)."""

from typing import Any


def build_log_context(
    *,
    mailbox_id: str | None = None,
    thread_id: str | None = None,
    dispatch_log_id: str | None = None,
    job_id: str | None = None,
    request_id: str | None = None,
    route: str | None = None,
) -> dict[str, Any]:
    """Return a PII-safe log context dict."""
    context: dict[str, Any] = {}
    if mailbox_id:
        context["mailbox_id"] = str(mailbox_id)
    if thread_id:
        context["thread_id"] = thread_id
    if dispatch_log_id:
        context["dispatch_log_id"] = str(dispatch_log_id)
    if job_id:
        context["job_id"] = str(job_id)
    if request_id:
        context["request_id"] = request_id
    if route:
        context["route"] = route
    return context


def mask_email(email: str | None) -> str:
    if not email:
        return ""
    local, _, domain = email.partition("@")
    prefix = local[:3] if local else ""
    return f"{prefix}...@{domain}" if domain else f"{prefix}..."
